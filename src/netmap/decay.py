"""Activity decay: demote nodes, handles and edges that stopped seeing traffic.

States only move forward (active -> fading -> idle), one step per tick.
Nothing is ever removed; an idle connection stays on the map until a new
event makes it active again.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
import typing as t

from .graph import ActivityState, GraphState
from .options import DEFAULT_OPTIONS, MapOptions

log = logging.getLogger("netmap.decay")


def next_state(current: ActivityState, elapsed: int, options: MapOptions) -> ActivityState:
    if current is ActivityState.ACTIVE and elapsed > options.fade_after_ms:
        return ActivityState.FADING
    if current is ActivityState.FADING and elapsed > options.idle_after_ms:
        return ActivityState.IDLE
    return current


def decay(state: GraphState, now: int, options: MapOptions = DEFAULT_OPTIONS) -> GraphState:
    """Return `state` with stale entries demoted; the same object if none were."""
    nodes = None
    edges = None

    for nid, node in state.nodes.items():
        new_state = next_state(node.activity_state, now - node.last_seen, options)
        handles = node.handles
        changed_handles = False
        if handles:
            stepped = []
            for h in handles:
                hs = next_state(h.activity_state, now - h.last_seen, options)
                if hs is not h.activity_state:
                    changed_handles = True
                    h = dataclasses.replace(h, activity_state=hs)
                stepped.append(h)
            if changed_handles:
                handles = tuple(stepped)
        if new_state is node.activity_state and not changed_handles:
            continue
        if nodes is None:
            nodes = dict(state.nodes)
        nodes[nid] = dataclasses.replace(node, activity_state=new_state, handles=handles)

    for key, edge in state.edges.items():
        new_state = next_state(edge.activity_state, now - edge.last_seen, options)
        if new_state is edge.activity_state:
            continue
        if edges is None:
            edges = dict(state.edges)
        edges[key] = dataclasses.replace(edge, activity_state=new_state)

    if nodes is None and edges is None:
        return state
    return dataclasses.replace(
        state,
        nodes=nodes if nodes is not None else state.nodes,
        edges=edges if edges is not None else state.edges,
    )


def now_ms() -> int:
    return int(time.time() * 1000)


class DecayLoop:
    """Periodic decay timer running on its own thread.

    `stop()` must be called when the owning view goes away; the loop is
    also a context manager. Tick failures are logged and the loop keeps
    running.
    """

    def __init__(self, tick: t.Callable[[], t.Any], period_ms: int, name: str = "netmap-decay"):
        if period_ms <= 0:
            raise ValueError("period_ms must be > 0")
        self._tick = tick
        self.period_ms = period_ms
        self.ticks = 0
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "DecayLoop":
        self._thread.start()
        return self

    def _run(self):
        while not self._stopped.wait(self.period_ms / 1000.0):
            try:
                self._tick()
            except Exception:
                log.exception("decay tick failed")
            self.ticks += 1

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()

    def stop(self, timeout: t.Optional[float] = 5.0) -> None:
        self._stopped.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False


def start_decay_loop(target, period_ms: int) -> DecayLoop:
    """Start ticking `target` every `period_ms`.

    `target` is either an object with a ``decay()`` method (a GraphSession)
    or a zero-argument callable.
    """
    tick = getattr(target, 'decay', None)
    if tick is None:
        if not callable(target):
            raise TypeError(f"cannot tick {target!r}")
        tick = target
    return DecayLoop(tick, period_ms).start()
