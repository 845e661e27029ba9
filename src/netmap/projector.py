"""Project graph state into render-ready views and merge layout positions back."""
from __future__ import annotations

import dataclasses
import logging
import math
import typing as t

from .graph import GraphState, Position, edge_id

log = logging.getLogger("netmap.projector")


@dataclasses.dataclass(frozen=True)
class HandleView:
    id: str
    protocol: str
    port: t.Optional[int]
    role: str
    connection_count: int
    activity_state: str


@dataclasses.dataclass(frozen=True)
class NodeView:
    id: str
    address: str
    activity_state: str
    position: t.Optional[t.Tuple[float, float]] = None
    label: str = ''
    labels: t.Tuple[t.Tuple[str, str], ...] = ()
    handles: t.Tuple[HandleView, ...] = ()
    event_count: int = 0

    def to_dict(self) -> t.Dict[str, t.Any]:
        d = {
            'id': self.id,
            'address': self.address,
            'activity_state': self.activity_state,
            'label': self.label,
            'labels': [{'field': f, 'value': v} for f, v in self.labels],
            'handles': [dataclasses.asdict(h) for h in self.handles],
            'event_count': self.event_count,
        }
        if self.position is not None:
            d['position'] = {'x': self.position[0], 'y': self.position[1]}
        return d


@dataclasses.dataclass(frozen=True)
class EdgeView:
    id: str
    src_id: str
    dst_id: str
    protocol: str
    src_port_display: str
    dst_port_display: str
    activity_state: str
    event_count: int
    byte_total: int
    src_handle: t.Optional[str] = None
    dst_handle: t.Optional[str] = None

    def to_dict(self) -> t.Dict[str, t.Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(frozen=True)
class Snapshot:
    nodes: t.Tuple[NodeView, ...] = ()
    edges: t.Tuple[EdgeView, ...] = ()

    def to_dict(self) -> t.Dict[str, t.Any]:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
        }


def _node_view(node) -> NodeView:
    pos = (node.position.x, node.position.y) if node.position is not None else None
    # most specific keying label wins, address otherwise
    label = node.labels[0][1] if node.labels else node.address
    return NodeView(
        id=node.id,
        address=node.address,
        activity_state=node.activity_state.value,
        position=pos,
        label=label,
        labels=node.labels,
        handles=tuple(
            HandleView(h.id, h.protocol, h.port, h.role, h.connection_count, h.activity_state.value)
            for h in node.handles
        ),
        event_count=node.event_count,
    )


def _edge_view(edge) -> EdgeView:
    return EdgeView(
        id=edge_id(edge.id),
        src_id=edge.src_node_id,
        dst_id=edge.dst_node_id,
        protocol=edge.protocol,
        src_port_display=edge.src_port_display,
        dst_port_display=edge.dst_port_display,
        activity_state=edge.activity_state.value,
        event_count=edge.event_count,
        byte_total=edge.byte_total,
        src_handle=edge.src_handle,
        dst_handle=edge.dst_handle,
    )


def project(state: GraphState) -> Snapshot:
    """Nodes and edges in insertion order. Does not touch `state`."""
    return Snapshot(
        nodes=tuple(_node_view(n) for n in state.nodes.values()),
        edges=tuple(_edge_view(e) for e in state.edges.values()),
    )


def _coerce_position(raw) -> t.Optional[Position]:
    if raw is None:
        return None
    if isinstance(raw, Position):
        return raw
    if isinstance(raw, t.Mapping):
        x, y = raw.get('x'), raw.get('y')
    elif isinstance(raw, (tuple, list)) and len(raw) == 2:
        x, y = raw
    else:
        x, y = getattr(raw, 'x', None), getattr(raw, 'y', None)
    try:
        fx, fy = float(x), float(y)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(fx) and math.isfinite(fy)):
        return None
    return Position(fx, fy)


def _unpack_update(update) -> t.Tuple[t.Optional[str], t.Any]:
    if isinstance(update, t.Mapping):
        return update.get('id'), update.get('position')
    return getattr(update, 'id', None), getattr(update, 'position', None)


def merge_positions(state: GraphState, updates: t.Iterable[t.Any]) -> GraphState:
    """Apply layout positions to known nodes.

    Only `position` changes. Unknown node ids and malformed updates are
    ignored; the layout may lag behind a growing graph.
    """
    nodes = None
    for update in updates or ():
        nid, raw_pos = _unpack_update(update)
        current = (nodes if nodes is not None else state.nodes).get(nid) if isinstance(nid, str) else None
        if current is None:
            log.debug("ignoring position for unknown node %r", nid)
            continue
        pos = _coerce_position(raw_pos)
        if pos is None:
            log.debug("ignoring malformed position for %r: %r", nid, raw_pos)
            continue
        if current.position == pos:
            continue
        if nodes is None:
            nodes = dict(state.nodes)
        nodes[nid] = dataclasses.replace(current, position=pos)
    if nodes is None:
        return state
    return dataclasses.replace(state, nodes=nodes)
