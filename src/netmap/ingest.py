"""PCAP and PCAPNG streaming readers.

`iter_packets` yields ``(ts_seconds, raw_bytes)`` without loading the file
in memory. Classic pcap goes through dpkt; pcapng through python-pcapng's
FileScanner, with dpkt's pcapng reader taking over when FileScanner gives
up on a block it cannot load. The format is taken from the file's magic
number, not its extension.
"""
from __future__ import annotations

import itertools
import logging
import struct
import typing as t

import dpkt
from pcapng import FileScanner
from pcapng.exceptions import PcapngLoadError

log = logging.getLogger("netmap.ingest")

PCAPNG_MAGIC = b"\x0a\x0d\x0d\x0a"
PCAP_MAGICS = (
    b"\xd4\xc3\xb2\xa1",  # little-endian, microseconds
    b"\xa1\xb2\xc3\xd4",  # big-endian, microseconds
    b"\x4d\x3c\xb2\xa1",  # little-endian, nanoseconds
    b"\xa1\xb2\x3c\x4d",  # big-endian, nanoseconds
)


def detect_format(path: str) -> str:
    with open(path, "rb") as fh:
        magic = fh.read(4)
    if magic == PCAPNG_MAGIC:
        return "pcapng"
    if magic in PCAP_MAGICS:
        return "pcap"
    raise RuntimeError(f"not a pcap/pcapng file: {path}")


def _iter_pcap(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    with open(path, "rb") as fh:
        for ts, buf in dpkt.pcap.Reader(fh):
            yield float(ts), bytes(buf)


def _iter_pcapng_with_scanner(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    with open(path, "rb") as fh:
        for block in FileScanner(fh):
            data = getattr(block, "packet_data", None)
            if data is None:
                continue
            ts = getattr(block, "timestamp", None)
            if ts is None:
                # simple packet blocks carry no timestamp
                ts = 0.0
            yield float(ts), bytes(data)


def _iter_pcapng_with_dpkt(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    with open(path, "rb") as fh:
        for ts, buf in dpkt.pcapng.Reader(fh):
            yield float(ts), bytes(buf)


def _iter_pcapng(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    produced = 0
    try:
        for pkt in _iter_pcapng_with_scanner(path):
            yield pkt
            produced += 1
    except (PcapngLoadError, ValueError, struct.error) as e:
        log.warning("%s: pcapng scanner stopped after %d packets (%s); continuing with dpkt", path, produced, e)
        # dpkt restarts from the top; skip what was already delivered
        yield from itertools.islice(_iter_pcapng_with_dpkt(path), produced, None)


def iter_packets(path: str) -> t.Iterator[t.Tuple[float, bytes]]:
    """Yield (ts, raw_bytes) for packets in a pcap or pcapng file."""
    fmt = detect_format(path)
    if fmt == "pcapng":
        yield from _iter_pcapng(path)
    else:
        yield from _iter_pcap(path)
