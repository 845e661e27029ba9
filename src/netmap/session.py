"""Graph session: the single owner of one observed source's graph.

A session holds exactly one `GraphState` and is the only thing that
replaces it. Folding, decay ticks, option changes and position merges all
go through one lock, so they run one at a time even when the decay loop
ticks from its own thread.

Batches carry a version. A batch whose version is not newer than the last
one processed is ignored. A batch flagged ``full_window`` holds everything
the upstream buffer still has (typically after wraparound); it is folded
into an empty graph so events already counted are not counted again.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import typing as t

from .decay import DecayLoop, decay as decay_state, now_ms, start_decay_loop
from .fields import NetworkMapConfig, extract_config
from .folder import fold
from .graph import GraphState, empty_state
from .options import DEFAULT_OPTIONS, MapOptions
from .projector import Snapshot, merge_positions, project

log = logging.getLogger("netmap.session")


class GraphSession:
    def __init__(
        self,
        source_description: t.Mapping[str, t.Any],
        options: t.Optional[MapOptions] = None,
        clock: t.Optional[t.Callable[[], int]] = None,
        name: str = "session",
    ):
        self.name = name
        self.options = options or DEFAULT_OPTIONS
        self.clock = clock or now_ms
        self.config: NetworkMapConfig = extract_config(source_description)
        self._lock = threading.RLock()
        self._state = empty_state(self.options.ephemeral_port_threshold)
        self._loop: t.Optional[DecayLoop] = None
        self._closed = False
        if not self.config.is_valid:
            log.info("%s: source has no source/destination address fields; network map not applicable", name)

    @property
    def is_applicable(self) -> bool:
        return self.config.is_valid

    @property
    def state(self) -> GraphState:
        return self._state

    @property
    def last_processed_version(self) -> int:
        return self._state.last_processed_version

    def ingest(self, batch: t.Iterable[t.Any], version: int, full_window: bool = False, now: t.Optional[int] = None) -> bool:
        """Fold one delivered batch. Returns False when the batch was ignored."""
        if not self.is_applicable:
            return False
        batch = list(batch)
        with self._lock:
            current = self._state
            if version <= current.last_processed_version:
                log.debug("%s: ignoring batch version %d (last processed %d)", self.name, version, current.last_processed_version)
                return False
            ts = self.clock() if now is None else now
            if full_window:
                base = empty_state(self.options.ephemeral_port_threshold)
                log.debug("%s: rebuilding graph from full window of %d events (version %d)", self.name, len(batch), version)
            else:
                base = current
            new_state = fold(base, batch, self.config.fields, ts, self.options)
            if full_window:
                new_state = _carry_positions(current, new_state)
            self._state = new_state.with_version(version)
            return True

    def ingest_from(self, buffer, now: t.Optional[int] = None) -> bool:
        """Pull whatever the ring buffer has past our last processed version."""
        events, version, full_window = buffer.since(self.last_processed_version)
        if not events and not full_window:
            return False
        return self.ingest(events, version, full_window=full_window, now=now)

    def set_options(self, options: MapOptions) -> bool:
        """Switch options; returns True when the graph had to be discarded."""
        with self._lock:
            previous = self.options
            self.options = options
            if not previous.policy_differs(options):
                return False
            log.warning(
                "%s: ephemeral_port_threshold changed %d -> %d; discarding graph (%d nodes, %d edges) and version %d",
                self.name,
                previous.ephemeral_port_threshold,
                options.ephemeral_port_threshold,
                len(self._state.nodes),
                len(self._state.edges),
                self._state.last_processed_version,
            )
            self._state = empty_state(options.ephemeral_port_threshold)
            return True

    def reset(self) -> None:
        with self._lock:
            self._state = empty_state(self.options.ephemeral_port_threshold)

    def decay(self, now: t.Optional[int] = None) -> GraphState:
        with self._lock:
            ts = self.clock() if now is None else now
            self._state = decay_state(self._state, ts, self.options)
            return self._state

    def apply_positions(self, updates: t.Iterable[t.Any]) -> GraphState:
        with self._lock:
            self._state = merge_positions(self._state, updates)
            return self._state

    def snapshot(self) -> Snapshot:
        if not self.is_applicable:
            return Snapshot()
        return project(self._state)

    def start_decay_loop(self, period_ms: t.Optional[int] = None) -> DecayLoop:
        """Start (or restart) the periodic decay tick; stopped by `close()`."""
        if self._closed:
            raise RuntimeError(f"{self.name}: session is closed")
        # never join the old loop under the lock: its tick may be waiting on it
        self.stop_decay_loop()
        self._loop = start_decay_loop(self, period_ms or self.options.fade_after_ms)
        return self._loop

    def stop_decay_loop(self) -> None:
        loop, self._loop = self._loop, None
        if loop is not None:
            loop.stop()

    def close(self) -> None:
        self.stop_decay_loop()
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def _carry_positions(previous: GraphState, rebuilt: GraphState) -> GraphState:
    # layout positions are not graph semantics; keep them across rebuilds
    nodes = None
    for nid, node in rebuilt.nodes.items():
        old = previous.nodes.get(nid)
        if old is None or old.position is None or node.position is not None:
            continue
        if nodes is None:
            nodes = dict(rebuilt.nodes)
        nodes[nid] = dataclasses.replace(node, position=old.position)
    if nodes is None:
        return rebuilt
    return dataclasses.replace(rebuilt, nodes=nodes)
