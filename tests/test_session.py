import logging
import threading

import pytest

from netmap.graph import ActivityState, UNPROCESSED, integrity_errors
from netmap.options import MapOptions
from netmap.packet import PACKET_SOURCE
from netmap.ring_buffer import EventRingBuffer
from netmap.session import GraphSession
from tests.utils import conn


def _session(**kw):
    opts = MapOptions(ephemeral_port_threshold=kw.pop("threshold", 1024), fade_after_ms=1500, idle_after_ms=5000)
    return GraphSession(PACKET_SOURCE, opts, clock=kw.pop("clock", lambda: 0), **kw)


def _edge(session):
    return next(iter(session.state.edges.values()))


def test_duplicate_version_is_a_noop():
    s = _session()
    batch = [conn("10.0.0.1", "10.0.0.2", 51000, 443)]
    assert s.ingest(batch, version=1, now=0) is True
    before = s.state
    assert s.ingest(batch, version=1, now=5) is False
    assert s.state is before
    assert _edge(s).event_count == 1
    # stale versions are ignored too
    assert s.ingest(batch, version=0, now=5) is False
    assert s.last_processed_version == 1


def test_incremental_batches_accumulate():
    s = _session()
    s.ingest([conn("10.0.0.1", "10.0.0.2", 51000, 443)], version=1, now=0)
    s.ingest([conn("10.0.0.1", "10.0.0.2", 52000, 443)], version=2, now=10)
    edge = _edge(s)
    assert edge.event_count == 2
    assert edge.last_seen == 10
    assert s.last_processed_version == 2


def test_full_window_does_not_double_count():
    s = _session()
    window = [conn("10.0.0.1", "10.0.0.2", 51000, 443), conn("10.0.0.3", "10.0.0.2", 51000, 443)]
    s.ingest(window, version=2, full_window=True, now=0)
    s.apply_positions([{"id": "10.0.0.2", "position": {"x": 4, "y": 2}}])
    # the buffer wrapped and redelivers what it still holds plus one new event
    redelivered = window[1:] + [conn("10.0.0.1", "10.0.0.2", 51000, 443)]
    s.ingest(redelivered, version=3, full_window=True, now=10)
    counts = sorted(e.event_count for e in s.state.edges.values())
    assert counts == [1, 1]
    assert s.state.nodes["10.0.0.2"].position is not None


def test_options_change_discards_graph(caplog):
    s = _session()
    s.ingest([conn("A", "B", 5000, 80), conn("A", "B", 6000, 80)], version=7, now=0)
    assert len(s.state.edges) == 1
    with caplog.at_level(logging.WARNING, logger="netmap.session"):
        discarded = s.set_options(MapOptions(ephemeral_port_threshold=0))
    assert discarded is True
    assert len(s.state.edges) == 0
    assert len(s.state.nodes) == 0
    assert s.last_processed_version == UNPROCESSED
    assert any("discarding graph" in r.getMessage() for r in caplog.records)
    # replay under the new policy keeps literal ports apart
    s.ingest([conn("A", "B", 5000, 80), conn("A", "B", 6000, 80)], version=1, full_window=True, now=0)
    assert len(s.state.edges) == 2


def test_timing_only_change_keeps_graph():
    s = _session()
    s.ingest([conn("A", "B", 5000, 80)], version=1, now=0)
    assert s.set_options(MapOptions(ephemeral_port_threshold=1024, fade_after_ms=100, idle_after_ms=200)) is False
    assert len(s.state.edges) == 1
    s.decay(now=150)
    assert _edge(s).activity_state is ActivityState.FADING


def test_not_applicable_source():
    s = GraphSession({"fields": [{"fullName": "pid"}, {"fullName": "comm"}]})
    assert s.is_applicable is False
    assert s.ingest([{"pid": 1}], version=1) is False
    snap = s.snapshot()
    assert snap.nodes == () and snap.edges == ()


def test_ingest_from_ring_buffer_wraparound():
    s = _session()
    buf = EventRingBuffer(3)
    buf.push_many([conn("10.0.0.1", "10.0.0.2", 40000, 80)] * 2)
    assert s.ingest_from(buf, now=0) is True
    assert _edge(s).event_count == 2
    # nothing new
    assert s.ingest_from(buf, now=1) is False
    buf.push(conn("10.0.0.1", "10.0.0.2", 40000, 80))
    s.ingest_from(buf, now=2)
    assert _edge(s).event_count == 3
    # reader falls behind by more than the capacity: rebuilt from the window
    buf.push_many([conn("10.0.0.1", "10.0.0.2", 40000, 80)] * 5)
    s.ingest_from(buf, now=3)
    assert _edge(s).event_count == 3
    assert s.last_processed_version == buf.version


def test_decay_uses_clock():
    ticks = iter([0, 1501, 5002])
    s = _session(clock=lambda: next(ticks))
    s.ingest([conn("a", "b", 40000, 80)], version=1)
    s.decay()
    assert _edge(s).activity_state is ActivityState.FADING
    s.decay()
    assert _edge(s).activity_state is ActivityState.IDLE


def test_close_stops_decay_loop():
    ticked = threading.Event()

    def clock():
        ticked.set()
        return 0

    with _session(clock=clock) as s:
        loop = s.start_decay_loop(10)
        assert ticked.wait(2.0)
        assert loop.running
    assert not loop.running
    with pytest.raises(RuntimeError):
        s.start_decay_loop(10)


def test_restarting_loop_stops_previous():
    s = _session()
    first = s.start_decay_loop(10)
    second = s.start_decay_loop(10)
    assert not first.running
    assert second.running
    s.close()
    assert not second.running


def test_concurrent_ingest_and_decay_keep_integrity():
    s = _session(clock=lambda: 10**6)
    loop = s.start_decay_loop(1)
    try:
        for v in range(1, 200):
            s.ingest([conn("10.0.%d.1" % (v % 7), "10.0.0.2", 40000 + v, 443)], version=v, now=v)
    finally:
        s.close()
    assert integrity_errors(s.state) == []
    assert s.last_processed_version == 199


def test_full_window_accepts_a_generator():
    s = _session()
    events = (conn("10.0.0.1", "10.0.0.2", 40000 + i, 443) for i in range(3))
    assert s.ingest(events, version=3, full_window=True, now=0) is True
    assert _edge(s).event_count == 3


def test_options_change_recovers_from_ring_buffer():
    s = _session()
    buf = EventRingBuffer(10)
    buf.push_many([conn("a", "b", 5000, 80), conn("a", "b", 6000, 80)])
    s.ingest_from(buf, now=0)
    assert len(s.state.edges) == 1
    assert s.set_options(MapOptions(ephemeral_port_threshold=0)) is True
    # the reset version makes the buffer hand back its whole window
    assert buf.since(s.last_processed_version)[2] is True
    assert s.ingest_from(buf, now=1) is True
    assert len(s.state.edges) == 2
    assert sum(e.event_count for e in s.state.edges.values()) == 2
    assert s.last_processed_version == buf.version


def test_nodes_decay_through_fading_to_idle():
    s = _session()
    s.ingest([conn("10.0.0.1", "10.0.0.2", 40000, 443)], version=1, now=0)
    s.ingest([conn("10.0.0.3", "10.0.0.2", 40000, 443)], version=2, now=4000)
    s.decay(now=1501)
    assert s.state.nodes["10.0.0.1"].activity_state is ActivityState.FADING
    s.decay(now=5001)
    assert s.state.nodes["10.0.0.1"].activity_state is ActivityState.IDLE
    # the shared server saw traffic at 4000
    assert s.state.nodes["10.0.0.2"].activity_state is ActivityState.ACTIVE
    assert s.state.nodes["10.0.0.3"].activity_state is ActivityState.ACTIVE
