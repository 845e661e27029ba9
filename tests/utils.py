"""Helpers shared by tests: canonical serialization, hashing and frame building.

Floats are rounded to 3 decimals before hashing so snapshot hashes are
stable across runs.
"""
from typing import Any
import hashlib
import json
import socket

import dpkt


_FLOAT_PREC = 3


def _round_floats(obj: Any) -> Any:
    if isinstance(obj, float):
        return round(obj, _FLOAT_PREC)
    if isinstance(obj, dict):
        return {k: _round_floats(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_round_floats(v) for v in obj]
    return obj


def canonical_json_bytes(obj: Any) -> bytes:
    rounded = _round_floats(obj)
    return json.dumps(rounded, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha1_of_obj(obj: Any) -> str:
    return hashlib.sha1(canonical_json_bytes(obj)).hexdigest()


def conn(src, dst, sport=None, dport=None, proto="tcp", size=None, **extra):
    """A raw event record in the shape the packet source produces."""
    ev = {"src.addr": src, "dst.addr": dst, "src.port": sport, "dst.port": dport, "proto": proto}
    if size is not None:
        ev["size"] = size
    ev.update(extra)
    return ev


def make_frame(src, dst, sport, dport, proto="tcp", payload=b""):
    """Build an Ethernet frame carrying TCP or UDP over IPv4 or IPv6."""
    if proto == "tcp":
        l4 = dpkt.tcp.TCP(sport=sport, dport=dport, flags=dpkt.tcp.TH_SYN, data=payload)
        pnum = dpkt.ip.IP_PROTO_TCP
    else:
        l4 = dpkt.udp.UDP(sport=sport, dport=dport, data=payload)
        l4.ulen = len(l4)
        pnum = dpkt.ip.IP_PROTO_UDP

    if ":" in src:
        ip = dpkt.ip6.IP6(
            src=socket.inet_pton(socket.AF_INET6, src),
            dst=socket.inet_pton(socket.AF_INET6, dst),
            nxt=pnum,
            hlim=64,
            data=l4,
        )
        ip.plen = len(l4)
        ip.p = pnum
        etype = dpkt.ethernet.ETH_TYPE_IP6
    else:
        ip = dpkt.ip.IP(src=socket.inet_aton(src), dst=socket.inet_aton(dst), p=pnum, data=l4)
        ip.len = len(ip)
        etype = dpkt.ethernet.ETH_TYPE_IP

    eth = dpkt.ethernet.Ethernet(
        src=b"\x02\x00\x00\x00\x00\x01",
        dst=b"\x02\x00\x00\x00\x00\x02",
        type=etype,
        data=ip,
    )
    return bytes(eth)


def make_arp_frame():
    arp = dpkt.arp.ARP()
    eth = dpkt.ethernet.Ethernet(
        src=b"\x02\x00\x00\x00\x00\x01",
        dst=b"\xff\xff\xff\xff\xff\xff",
        type=dpkt.ethernet.ETH_TYPE_ARP,
        data=arp,
    )
    return bytes(eth)


def write_pcap(path, frames):
    """Write [(ts_seconds, frame_bytes), ...] as a classic pcap file."""
    with open(path, "wb") as fh:
        w = dpkt.pcap.Writer(fh)
        for ts, frame in frames:
            w.writepkt(frame, ts=ts)
    return path
