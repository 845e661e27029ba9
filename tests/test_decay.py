import threading
import time

import pytest

from netmap.decay import DecayLoop, decay, next_state, start_decay_loop
from netmap.folder import fold
from netmap.graph import ActivityState, empty_state
from tests.utils import conn

A = ActivityState.ACTIVE
F = ActivityState.FADING
I = ActivityState.IDLE


def _states(s):
    edge = next(iter(s.edges.values()))
    return edge.activity_state, [n.activity_state for n in s.nodes.values()]


def test_fade_just_past_threshold(fields, options):
    s = fold(empty_state(), [conn("10.0.0.1", "10.0.0.2", 51000, 443)], fields, now=10, options=options)
    same = decay(s, 10 + options.fade_after_ms, options)
    assert same is s
    faded = decay(s, 10 + options.fade_after_ms + 1, options)
    edge_state, node_states = _states(faded)
    assert edge_state is F
    assert node_states == [F, F]


def test_fold_resets_faded_edge_to_active(fields, options):
    s = fold(empty_state(), [conn("10.0.0.1", "10.0.0.2", 51000, 443)], fields, now=0, options=options)
    s = decay(s, options.fade_after_ms + 1, options)
    s = decay(s, options.idle_after_ms + 1, options)
    assert _states(s)[0] is I
    s = fold(s, [conn("10.0.0.1", "10.0.0.2", 52000, 443)], fields, now=options.idle_after_ms + 100, options=options)
    edge_state, node_states = _states(s)
    assert edge_state is A
    assert node_states == [A, A]


def test_active_never_jumps_to_idle(fields, options):
    s = fold(empty_state(), [conn("a", "b", 1, 2)], fields, now=0, options=options)
    s = decay(s, options.idle_after_ms * 10, options)
    assert _states(s)[0] is F
    s = decay(s, options.idle_after_ms * 10, options)
    assert _states(s)[0] is I
    # idle stays idle
    assert decay(s, options.idle_after_ms * 20, options) is s


def test_fresh_entries_untouched(fields, options):
    s = fold(empty_state(), [conn("a", "b", 40000, 80)], fields, now=0, options=options)
    s = fold(s, [conn("c", "d", 40000, 80)], fields, now=2000, options=options)
    s = decay(s, 2000, options)
    by_src = {e.src_node_id: e.activity_state for e in s.edges.values()}
    assert by_src == {"a": F, "c": A}
    assert s.nodes["c"].activity_state is A


def test_handles_decay_with_their_node(fields, options):
    s = fold(empty_state(), [conn("a", "b", 40000, 80)], fields, now=0, options=options)
    s = decay(s, options.fade_after_ms + 1, options)
    assert [h.activity_state for h in s.nodes["b"].handles] == [F]


def test_next_state_table(options):
    assert next_state(A, options.fade_after_ms, options) is A
    assert next_state(A, options.fade_after_ms + 1, options) is F
    assert next_state(F, options.idle_after_ms, options) is F
    assert next_state(F, options.idle_after_ms + 1, options) is I
    assert next_state(I, 0, options) is I


def test_decay_loop_ticks_and_stops():
    ticked = threading.Event()
    calls = []

    def tick():
        calls.append(1)
        ticked.set()

    loop = start_decay_loop(tick, 10)
    assert ticked.wait(2.0)
    loop.stop()
    assert not loop.running
    n = len(calls)
    time.sleep(0.05)
    assert len(calls) == n


def test_decay_loop_survives_tick_errors():
    seen = []

    def tick():
        seen.append(1)
        if len(seen) == 1:
            raise RuntimeError("boom")

    with DecayLoop(tick, 5).start() as loop:
        deadline = time.time() + 2.0
        while len(seen) < 3 and time.time() < deadline:
            time.sleep(0.01)
    assert len(seen) >= 3
    assert not loop.running


def test_decay_loop_rejects_bad_period():
    with pytest.raises(ValueError):
        DecayLoop(lambda: None, 0)
