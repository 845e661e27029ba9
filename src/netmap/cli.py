"""Command line driver: build a network map from a capture file or interface."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

from . import __version__
from .capture import capture_events
from .logging_config import setup_logging
from .options import PROFILES, MapOptions
from .packet import PACKET_SOURCE
from .ring_buffer import EventRingBuffer
from .session import GraphSession

log = logging.getLogger("netmap.cli")

EXIT_OK = 0
EXIT_INPUT = 2
EXIT_INTERNAL = 10


def canonical_bytes(obj) -> bytes:
    """Canonical JSON bytes: sort keys, round floats to 3 decimals, compact separators."""
    def _round(o):
        if isinstance(o, float):
            return round(o, 3)
        if isinstance(o, dict):
            return {k: _round(o[k]) for k in sorted(o.keys())}
        if isinstance(o, list):
            return [_round(x) for x in o]
        return o

    return json.dumps(_round(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def write_snapshot_file(path: Path, obj, ndjson: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = canonical_bytes(obj)
    if ndjson:
        with open(path, "ab") as fh:
            fh.write(data)
            fh.write(b"\n")
    else:
        with open(path, "wb") as fh:
            fh.write(data)


def snapshot_document(session: GraphSession, source: str, now) -> dict:
    snap = session.snapshot().to_dict()
    summary = {"nodes": len(snap["nodes"]), "edges": len(snap["edges"])}
    for kind in ("nodes", "edges"):
        for item in snap[kind]:
            k = f"{kind}_{item['activity_state']}"
            summary[k] = summary.get(k, 0) + 1
    return {
        "schema_version": "netmap/v1",
        "source": source,
        "version": session.last_processed_version,
        "generated_at": now,
        "ephemeral_port_threshold": session.options.ephemeral_port_threshold,
        "summary": summary,
        "nodes": snap["nodes"],
        "edges": snap["edges"],
    }


def _batches(events, size: int):
    batch = []
    for ev in events:
        batch.append(ev)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _emit(doc, out, ndjson: bool) -> None:
    if out:
        write_snapshot_file(Path(out), doc, ndjson=ndjson)
    else:
        sys.stdout.write(canonical_bytes(doc).decode("utf-8") + "\n")
        sys.stdout.flush()


def build_parser():
    p = argparse.ArgumentParser(prog="netmap", description="Live network topology map builder")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--log", default="INFO", help="Log level")
    sub = p.add_subparsers(dest="cmd")

    def _common(a):
        a.add_argument("--profile", choices=sorted(PROFILES), default="default", help="Option preset (explicit flags win)")
        a.add_argument("--ephemeral-port-threshold", type=int, help="Collapse ports >= N into one bucket (0 disables)")
        a.add_argument("--fade-after-ms", type=int, help="Mark entries fading after N ms without traffic")
        a.add_argument("--idle-after-ms", type=int, help="Mark entries idle after N ms without traffic")
        a.add_argument("--batch-size", type=int, default=100, help="Events per folded batch")
        a.add_argument("--buffer-capacity", type=int, default=10000, help="Events held by the upstream ring buffer")
        a.add_argument("--out", metavar="FILE", help="Write snapshots to FILE instead of stdout")
        a.add_argument("--ndjson", action="store_true", help="Append one snapshot per batch as newline-delimited JSON")

    r = sub.add_parser("replay", help="Build the map from a pcap/pcapng file using capture timestamps")
    r.add_argument("capture", help="Path to pcap/pcapng")
    r.add_argument("--max-packets", type=int, help="Stop after N parsed packets")
    _common(r)

    lv = sub.add_parser("live", help="Build the map from a live interface (requires scapy)")
    lv.add_argument("--interface", required=True, help="Network interface to capture from")
    lv.add_argument("--filter", dest="bpf_filter", help="BPF capture filter")
    lv.add_argument("--max-packets", type=int, help="Stop after N parsed packets")
    lv.add_argument("--timeout", type=float, help="Stop capturing after N seconds")
    lv.add_argument("--tick-ms", type=int, help="Decay tick period (defaults to fade-after-ms)")
    lv.add_argument("--emit-interval", type=float, default=1.0, help="Seconds between emitted snapshots")
    _common(lv)
    return p


def options_from_args(args) -> MapOptions:
    return MapOptions.from_params(
        {
            "ephemeral_port_threshold": args.ephemeral_port_threshold,
            "fade_after_ms": args.fade_after_ms,
            "idle_after_ms": args.idle_after_ms,
        },
        profile=args.profile,
    )


def run_replay(args, options: MapOptions) -> int:
    if not os.path.exists(args.capture):
        log.error("capture not found: %s", args.capture)
        return EXIT_INPUT
    source = Path(args.capture).stem
    if args.out and args.ndjson and Path(args.out).exists():
        Path(args.out).unlink()

    buffer = EventRingBuffer(args.buffer_capacity)
    now = None
    with GraphSession(PACKET_SOURCE, options, name=source) as session:
        events = capture_events(pcap_file=args.capture, max_packets=args.max_packets)
        for batch in _batches(events, max(1, args.batch_size)):
            buffer.push_many(batch)
            # capture time is the clock in replay mode
            now = max(ev["timestamp"] for ev in batch)
            session.decay(now)
            session.ingest_from(buffer, now=now)
            if args.ndjson:
                _emit(snapshot_document(session, source, now), args.out, ndjson=True)
        if now is not None:
            session.decay(now)
        if not args.ndjson:
            _emit(snapshot_document(session, source, now), args.out, ndjson=False)
        log.info(
            "replayed %s: %d events, %d nodes, %d edges",
            args.capture,
            buffer.version,
            len(session.state.nodes),
            len(session.state.edges),
        )
    return EXIT_OK


def run_live(args, options: MapOptions) -> int:
    source = f"live_{args.interface}"
    buffer = EventRingBuffer(args.buffer_capacity)
    with GraphSession(PACKET_SOURCE, options, name=source) as session:
        session.start_decay_loop(args.tick_ms)
        last_emit = time.monotonic()
        pending = 0
        try:
            for ev in capture_events(
                interface=args.interface,
                bpf_filter=args.bpf_filter,
                max_packets=args.max_packets,
                timeout=args.timeout,
            ):
                buffer.push(ev)
                pending += 1
                elapsed = time.monotonic() - last_emit
                if pending >= args.batch_size or elapsed >= args.emit_interval:
                    session.ingest_from(buffer)
                    pending = 0
                if elapsed >= args.emit_interval:
                    _emit(snapshot_document(session, source, session.clock()), args.out, ndjson=args.ndjson)
                    last_emit = time.monotonic()
        except KeyboardInterrupt:
            log.info("capture interrupted")
        session.ingest_from(buffer)
        _emit(snapshot_document(session, source, session.clock()), args.out, ndjson=args.ndjson)
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log)
    if args.cmd is None:
        parser.print_help()
        return EXIT_INPUT

    try:
        options = options_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        if args.cmd == "replay":
            return run_replay(args, options)
        return run_live(args, options)
    except RuntimeError as e:
        log.error("%s", e)
        return EXIT_INPUT
    except Exception:
        log.exception("internal error")
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
