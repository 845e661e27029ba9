"""Packet parsing helpers: turn raw frames into connection event records."""
from __future__ import annotations

import socket
import typing as t

import dpkt

PROTO_NAMES = {
    dpkt.ip.IP_PROTO_TCP: "TCP",
    dpkt.ip.IP_PROTO_UDP: "UDP",
    dpkt.ip.IP_PROTO_ICMP: "ICMP",
    dpkt.ip.IP_PROTO_ICMP6: "ICMPV6",
}

# source description for the records produced by `parse_raw`
PACKET_SOURCE = {
    "name": "packets",
    "fields": [
        {"fullName": "src.addr", "annotations": {"networkmap.type": "source-addr"}},
        {"fullName": "src.port", "annotations": {"networkmap.role": "port"}},
        {"fullName": "dst.addr", "annotations": {"networkmap.type": "dest-addr"}},
        {"fullName": "dst.port", "annotations": {"networkmap.role": "port"}},
        {"fullName": "proto", "annotations": {"networkmap.role": "protocol"}},
        {"fullName": "timestamp", "annotations": {"networkmap.role": "timestamp"}},
        {"fullName": "size", "annotations": {"networkmap.role": "bytes"}},
    ],
}


def parse_raw(ts: float, raw: bytes) -> t.Optional[t.Dict[str, t.Any]]:
    """Parse one Ethernet frame into an event record, or None if unsupported.

    TCP/UDP over IPv4/IPv6 yield ports; other IP payloads yield records
    without ports. `timestamp` is in milliseconds.
    """
    try:
        eth = dpkt.ethernet.Ethernet(raw)
    except Exception:
        return None

    if not isinstance(eth.data, (dpkt.ip.IP, dpkt.ip6.IP6)):
        return None
    ip = eth.data

    # dpkt's IPv4 uses `p` for protocol, IPv6 uses `nxt`
    proto = getattr(ip, "p", getattr(ip, "nxt", None))

    src_port = None
    dst_port = None
    l4 = ip.data
    if proto in (dpkt.ip.IP_PROTO_TCP, dpkt.ip.IP_PROTO_UDP) and not isinstance(l4, (bytes, bytearray)):
        src_port = getattr(l4, "sport", None)
        dst_port = getattr(l4, "dport", None)

    try:
        if isinstance(ip, dpkt.ip.IP):
            src_addr = socket.inet_ntoa(ip.src)
            dst_addr = socket.inet_ntoa(ip.dst)
        else:
            src_addr = socket.inet_ntop(socket.AF_INET6, ip.src)
            dst_addr = socket.inet_ntop(socket.AF_INET6, ip.dst)
    except (OSError, ValueError):
        return None

    return {
        "src.addr": src_addr,
        "dst.addr": dst_addr,
        "src.port": src_port,
        "dst.port": dst_port,
        "proto": PROTO_NAMES.get(proto, str(proto) if proto is not None else None),
        "timestamp": int(round(float(ts) * 1000)),
        "size": len(raw),
    }
