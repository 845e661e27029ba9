"""Fold batches of raw connection events into the graph state.

Per event, in batch order:

  1. extract a ConnectionTuple (records that cannot be used are skipped),
  2. collapse ports at or above the ephemeral threshold to EPHEMERAL_PORT
     and orient the tuple (see `orient`),
  3. make sure both endpoint nodes exist,
  4. make sure the edge exists,
  5. refresh last_seen/activity on nodes, handles and edge and bump counters.

All timestamps come from `now`, the batch processing time; a record's own
timestamp is not used.

`fold` does not know whether a batch is new or a redelivered window; the
owner of the state decides that (see `netmap.session`). Folding the same
events twice counts them twice.
"""
from __future__ import annotations

import dataclasses
import logging
import typing as t

from .fields import ConnectionTuple, FieldMapping, extract_tuple, is_loopback, node_labels
from .graph import (
    EPHEMERAL_HANDLE_LABEL,
    EPHEMERAL_PORT,
    ActivityState,
    EdgeKey,
    EdgeRecord,
    GraphState,
    Handle,
    NodeRecord,
    handle_sort_key,
)
from .options import DEFAULT_OPTIONS, MapOptions

log = logging.getLogger("netmap.folder")


def is_ephemeral(port: t.Optional[int], threshold: int) -> bool:
    return threshold > 0 and port is not None and port >= threshold


def collapse_port(port: t.Optional[int], threshold: int) -> t.Optional[int]:
    if is_ephemeral(port, threshold):
        return EPHEMERAL_PORT
    return port


def display_port(port: t.Optional[int], threshold: int) -> str:
    if port is None:
        return ''
    if is_ephemeral(port, threshold):
        return f"{threshold}+"
    return str(port)


def handle_id(protocol: str, port: t.Optional[int], threshold: int) -> str:
    if port is None:
        return f"{protocol}:-"
    if is_ephemeral(port, threshold):
        return f"{protocol}:{EPHEMERAL_HANDLE_LABEL}"
    return f"{protocol}:{port}"


def orient(tup: ConnectionTuple, threshold: int) -> t.Tuple[str, str, t.Optional[int], t.Optional[int]]:
    """Return (src, dst, src_port, dst_port) with the direction policy applied.

    With collapsing enabled and both ports below the threshold, the lower
    port is the service side and becomes the destination. Anything else
    keeps the observed direction.
    """
    sp, dp = tup.src_port, tup.dst_port
    if (
        threshold > 0
        and sp is not None
        and dp is not None
        and sp < threshold
        and dp < threshold
        and sp < dp
    ):
        return tup.dst_addr, tup.src_addr, dp, sp
    return tup.src_addr, tup.dst_addr, sp, dp


def make_edge_key(tup: ConnectionTuple, threshold: int) -> EdgeKey:
    src, dst, sp, dp = orient(tup, threshold)
    return EdgeKey(src, dst, tup.protocol or '', collapse_port(sp, threshold), collapse_port(dp, threshold))


def _touch_handles(handles: t.Tuple[Handle, ...], hid: str, protocol: str, port: t.Optional[int], role: str, threshold: int, now: int) -> t.Tuple[Handle, ...]:
    out = list(handles)
    for i, h in enumerate(out):
        if h.id == hid:
            out[i] = dataclasses.replace(
                h,
                connection_count=h.connection_count + 1,
                last_seen=max(h.last_seen, now),
                activity_state=ActivityState.ACTIVE,
            )
            return tuple(out)
    shown = threshold if is_ephemeral(port, threshold) else port
    out.append(Handle(id=hid, protocol=protocol, port=shown, role=role, connection_count=1, last_seen=now))
    out.sort(key=handle_sort_key)
    return tuple(out)


def _touch_node(nodes: t.Dict[str, NodeRecord], addr: str, labels, hid: str, protocol: str, port: t.Optional[int], role: str, threshold: int, now: int) -> None:
    node = nodes.get(addr)
    if node is None:
        node = NodeRecord(id=addr, address=addr, first_seen=now, last_seen=now, labels=labels)
    elif labels and not node.labels:
        node = dataclasses.replace(node, labels=labels)
    nodes[addr] = dataclasses.replace(
        node,
        last_seen=max(node.last_seen, now),
        activity_state=ActivityState.ACTIVE,
        event_count=node.event_count + 1,
        handles=_touch_handles(node.handles, hid, protocol, port, role, threshold, now),
    )


def fold(
    state: GraphState,
    batch: t.Iterable[t.Any],
    fields: FieldMapping,
    now: int,
    options: MapOptions = DEFAULT_OPTIONS,
) -> GraphState:
    """Fold `batch` into `state` and return the resulting state.

    The input state is never modified. When no event in the batch is usable
    the input state is returned as is. `last_processed_version` is carried
    over unchanged; the caller records the batch version.
    """
    threshold = options.ephemeral_port_threshold
    if (
        state.ephemeral_port_threshold is not None
        and state.ephemeral_port_threshold != threshold
        and not state.is_empty
    ):
        raise ValueError(
            f"state was built with ephemeral_port_threshold={state.ephemeral_port_threshold}, "
            f"got {threshold}; discard the state first"
        )

    nodes: t.Optional[t.Dict[str, NodeRecord]] = None
    edges: t.Optional[t.Dict[EdgeKey, EdgeRecord]] = None
    folded = 0
    skipped = 0

    for idx, raw in enumerate(batch):
        tup = extract_tuple(raw, fields, default_timestamp=now)
        if tup is None:
            skipped += 1
            log.debug("skipping unusable event #%d: %r", idx, raw)
            continue

        if nodes is None:
            nodes = dict(state.nodes)
            edges = dict(state.edges)

        local = is_loopback(tup.src_addr) and is_loopback(tup.dst_addr)
        labels = {
            tup.dst_addr: node_labels(raw, fields, 'dst', local),
            tup.src_addr: node_labels(raw, fields, 'src', local),
        }
        protocol = tup.protocol or ''
        src, dst, sp, dp = orient(tup, threshold)
        src_hid = handle_id(protocol, sp, threshold)
        dst_hid = handle_id(protocol, dp, threshold)

        # endpoints before the edge: edges never reference missing nodes
        _touch_node(nodes, src, labels.get(src, ()), src_hid, protocol, sp, 'source', threshold, now)
        _touch_node(nodes, dst, labels.get(dst, ()), dst_hid, protocol, dp, 'target', threshold, now)

        key = EdgeKey(src, dst, protocol, collapse_port(sp, threshold), collapse_port(dp, threshold))
        edge = edges.get(key)
        if edge is None:
            edge = EdgeRecord(
                id=key,
                src_node_id=src,
                dst_node_id=dst,
                protocol=protocol,
                src_port_display=display_port(sp, threshold),
                dst_port_display=display_port(dp, threshold),
                first_seen=now,
                last_seen=now,
                src_handle=src_hid,
                dst_handle=dst_hid,
            )
        edges[key] = dataclasses.replace(
            edge,
            last_seen=max(edge.last_seen, now),
            activity_state=ActivityState.ACTIVE,
            event_count=edge.event_count + 1,
            byte_total=edge.byte_total + (tup.byte_count or 0),
        )
        folded += 1

    if skipped:
        log.info("skipped %d of %d events without usable addresses", skipped, skipped + folded)
    if nodes is None:
        return state

    return GraphState(
        nodes=nodes,
        edges=edges,
        last_processed_version=state.last_processed_version,
        ephemeral_port_threshold=threshold,
    )
