"""Graph state: deduplicated node and edge tables keyed by canonical identity.

Records are frozen. The folder, the decay driver and position merges build
a new `GraphState` that shares every untouched record with its predecessor,
so a projected snapshot never changes underneath a renderer.
"""
from __future__ import annotations

import dataclasses
import enum
import typing as t

UNPROCESSED = -1

# stands in for any port at or above the ephemeral threshold; no real port is negative
EPHEMERAL_PORT = -1
EPHEMERAL_HANDLE_LABEL = 'high'


class ActivityState(str, enum.Enum):
    ACTIVE = 'active'
    FADING = 'fading'
    IDLE = 'idle'


class EdgeKey(t.NamedTuple):
    src_addr: str
    dst_addr: str
    protocol: str
    src_port: t.Optional[int]
    dst_port: t.Optional[int]


def edge_id(key: EdgeKey) -> str:
    def _p(port):
        if port is None:
            return ''
        if port == EPHEMERAL_PORT:
            return EPHEMERAL_HANDLE_LABEL
        return str(port)
    return f"{key.src_addr}:{key.protocol}:{_p(key.src_port)}->{key.dst_addr}:{key.protocol}:{_p(key.dst_port)}"


@dataclasses.dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclasses.dataclass(frozen=True)
class Handle:
    """A proto:port connection point on a node."""
    id: str
    protocol: str
    port: t.Optional[int]
    role: str
    connection_count: int
    last_seen: int
    activity_state: ActivityState = ActivityState.ACTIVE

    @property
    def is_ephemeral(self) -> bool:
        return self.id.endswith(':' + EPHEMERAL_HANDLE_LABEL)


def handle_sort_key(h: Handle):
    # regular ports ascending, missing ports first, collapsed ports last
    return (h.is_ephemeral, -1 if h.port is None else h.port, h.protocol, h.role)


@dataclasses.dataclass(frozen=True)
class NodeRecord:
    id: str
    address: str
    first_seen: int
    last_seen: int
    activity_state: ActivityState = ActivityState.ACTIVE
    position: t.Optional[Position] = None
    event_count: int = 0
    labels: t.Tuple[t.Tuple[str, str], ...] = ()
    handles: t.Tuple[Handle, ...] = ()

    def handle(self, handle_id: str) -> t.Optional[Handle]:
        for h in self.handles:
            if h.id == handle_id:
                return h
        return None


@dataclasses.dataclass(frozen=True)
class EdgeRecord:
    id: EdgeKey
    src_node_id: str
    dst_node_id: str
    protocol: str
    src_port_display: str
    dst_port_display: str
    first_seen: int
    last_seen: int
    event_count: int = 0
    byte_total: int = 0
    activity_state: ActivityState = ActivityState.ACTIVE
    src_handle: t.Optional[str] = None
    dst_handle: t.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class GraphState:
    nodes: t.Mapping[str, NodeRecord] = dataclasses.field(default_factory=dict)
    edges: t.Mapping[EdgeKey, EdgeRecord] = dataclasses.field(default_factory=dict)
    last_processed_version: int = UNPROCESSED
    # the port-collapsing policy every EdgeKey in `edges` was built under
    ephemeral_port_threshold: t.Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.edges

    def with_version(self, version: int) -> "GraphState":
        if version < self.last_processed_version:
            raise ValueError(f"version went backwards: {version} < {self.last_processed_version}")
        return dataclasses.replace(self, last_processed_version=version)


def empty_state(ephemeral_port_threshold: t.Optional[int] = None) -> GraphState:
    return GraphState(nodes={}, edges={}, last_processed_version=UNPROCESSED, ephemeral_port_threshold=ephemeral_port_threshold)


def integrity_errors(state: GraphState) -> t.List[str]:
    """List violations of the node/edge invariants (empty when consistent)."""
    errors = []
    for nid, node in state.nodes.items():
        if node.id != nid:
            errors.append(f"node keyed {nid!r} carries id {node.id!r}")
    for key, edge in state.edges.items():
        if edge.id != key:
            errors.append(f"edge keyed {key!r} carries id {edge.id!r}")
        for end in (edge.src_node_id, edge.dst_node_id):
            if end not in state.nodes:
                errors.append(f"edge {edge_id(key)} references missing node {end!r}")
    return errors
