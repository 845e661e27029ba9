"""Connection event sources: deterministic pcap replay and live sniffing.

`capture_events()` yields raw event records (see `netmap.packet`):

- with `pcap_file`, the capture is replayed in file order; deterministic,
  used by tests and the ``replay`` command;
- with `interface`, packets are sniffed live through scapy's AsyncSniffer.
  scapy is only imported in that mode and is an optional dependency.
"""
from __future__ import annotations

import collections
import logging
import os
import time
from typing import Any, Callable, Dict, Generator, Optional

from .ingest import iter_packets
from .packet import parse_raw

log = logging.getLogger("netmap.capture")


def _replay(pcap_file: str, max_packets: Optional[int] = None) -> Generator[Dict[str, Any], None, None]:
    if not os.path.exists(pcap_file):
        raise RuntimeError(f"pcap file not found: {pcap_file}")
    produced = 0
    unparsed = 0
    for ts, raw in iter_packets(pcap_file):
        ev = parse_raw(ts, raw)
        if ev is None:
            unparsed += 1
            continue
        yield ev
        produced += 1
        if max_packets is not None and produced >= int(max_packets):
            break
    if unparsed:
        log.debug("%s: %d frames were not IP and were skipped", pcap_file, unparsed)


def _sniff_live(interface: str, bpf_filter: Optional[str], max_packets: Optional[int], timeout: Optional[float]):
    try:
        from scapy.all import AsyncSniffer
    except ImportError:
        raise RuntimeError("scapy not available for live sniffing (install netmap[live])")

    queue = collections.deque()

    def _prn(pkt):
        ev = parse_raw(getattr(pkt, "time", time.time()), bytes(pkt))
        if ev is not None:
            queue.append(ev)

    sniffer = AsyncSniffer(iface=interface, filter=bpf_filter, prn=_prn, store=False, timeout=timeout)
    sniffer.start()
    produced = 0
    try:
        while sniffer.running or queue:
            while queue:
                yield queue.popleft()
                produced += 1
                if max_packets and produced >= int(max_packets):
                    return
            time.sleep(0.01)
    finally:
        if sniffer.running:
            sniffer.stop()


def capture_events(
    interface: Optional[str] = None,
    bpf_filter: Optional[str] = None,
    max_packets: Optional[int] = None,
    timeout: Optional[float] = None,
    pcap_file: Optional[str] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Generator[Dict[str, Any], None, None]:
    """Yield raw connection event records from a capture file or an interface.

    `callback` sees every record before it is yielded; its failures are
    logged and do not stop the capture.
    """
    if pcap_file:
        source = _replay(pcap_file, max_packets=max_packets)
    elif interface is not None:
        source = _sniff_live(interface, bpf_filter, max_packets, timeout)
    else:
        raise RuntimeError("no interface or pcap_file provided for capture")

    for ev in source:
        if callback:
            try:
                callback(ev)
            except Exception:
                log.exception("capture callback failed")
        yield ev
