"""Field adapter: locate connection fields in an event source and extract tuples.

A source description is a mapping with a ``fields`` list. Each field entry
carries a ``fullName`` (or ``name``) and optional ``annotations`` (or
``tags``) mapping. Annotations win over the fixed name patterns:

  - ``networkmap.type``: ``source-addr`` / ``dest-addr``
  - ``networkmap.role``: ``port`` / ``protocol`` / ``timestamp`` / ``bytes``
  - ``networkmap.key``: ``source`` / ``dest`` / ``shared`` (keying fields)

`extract_tuple` turns one raw record into a `ConnectionTuple` so nothing
downstream touches untyped records.
"""
from __future__ import annotations

import dataclasses
import ipaddress
import logging
import math
import typing as t

log = logging.getLogger("netmap.fields")

FIELD_PATTERNS = {
    'src_addr': ['src.addr', 'srcAddr', 'source.addr', 'src_addr', 'saddr', 'src.ip', 'srcip', 'src_ip'],
    'src_port': ['src.port', 'srcPort', 'source.port', 'src_port', 'sport'],
    'dst_addr': ['dst.addr', 'dstAddr', 'dest.addr', 'dst_addr', 'daddr', 'dst.ip', 'dstip', 'dst_ip'],
    'dst_port': ['dst.port', 'dstPort', 'dest.port', 'dst_port', 'dport'],
    'proto': ['proto', 'protocol', 'l4protocol', 'src.proto', 'dst.proto', 'l4proto'],
    'timestamp': ['timestamp', 'timestamp_ms'],
    'byte_count': ['size', 'bytes', 'byte_count'],
}

KEYING_FIELD_PATTERNS = {
    'src': ['src.k8s.namespace', 'src.k8s.name', 'src.k8s.kind'],
    'dst': ['dst.k8s.namespace', 'dst.k8s.name', 'dst.k8s.kind'],
    # used for both sides when traffic is local (loopback <-> loopback)
    'shared': ['k8s.namespace', 'k8s.name', 'k8s.kind', 'k8s.containerName', 'k8s.podName'],
}

PROTO_NUMBERS = {1: 'ICMP', 6: 'TCP', 17: 'UDP', 58: 'ICMPV6', 132: 'SCTP'}
DEFAULT_PROTOCOL = 'TCP'
LOCALHOST_NAMES = ('localhost',)


@dataclasses.dataclass(frozen=True)
class FieldMapping:
    src_addr: str
    dst_addr: str
    src_port: t.Optional[str] = None
    dst_port: t.Optional[str] = None
    proto: t.Optional[str] = None
    timestamp: t.Optional[str] = None
    byte_count: t.Optional[str] = None
    src_key_fields: t.Tuple[str, ...] = ()
    dst_key_fields: t.Tuple[str, ...] = ()
    shared_key_fields: t.Tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class NetworkMapConfig:
    is_valid: bool
    fields: t.Optional[FieldMapping] = None


@dataclasses.dataclass(frozen=True)
class ConnectionTuple:
    """One usable connection observation.

    `timestamp` is the record's own time and is informational only: the
    folder stamps `first_seen`/`last_seen` with the batch's processing time
    so decay runs against one clock.
    """
    src_addr: str
    dst_addr: str
    src_port: t.Optional[int]
    dst_port: t.Optional[int]
    protocol: t.Optional[str]
    timestamp: t.Optional[int]
    byte_count: t.Optional[int] = None


def _field_name(field: t.Mapping[str, t.Any]) -> t.Optional[str]:
    name = field.get('fullName') or field.get('full_name') or field.get('name')
    return str(name) if name else None


def _field_annotations(field: t.Mapping[str, t.Any]) -> t.Mapping[str, t.Any]:
    ann = field.get('annotations')
    if ann is None:
        ann = field.get('tags')
    return ann if isinstance(ann, t.Mapping) else {}


def extract_config(source_description: t.Mapping[str, t.Any]) -> NetworkMapConfig:
    """Build a FieldMapping for a source, or report it unusable for a graph."""
    raw_fields = []
    if isinstance(source_description, t.Mapping):
        raw_fields = [f for f in (source_description.get('fields') or []) if isinstance(f, t.Mapping)]

    names: t.List[str] = []
    found: t.Dict[str, str] = {}
    keyed: t.Dict[str, t.List[str]] = {'source': [], 'dest': [], 'shared': []}

    for f in raw_fields:
        name = _field_name(f)
        if not name:
            continue
        names.append(name)
        ann = _field_annotations(f)
        map_type = ann.get('networkmap.type')
        map_role = ann.get('networkmap.role')
        map_key = ann.get('networkmap.key')

        if map_type == 'source-addr':
            found['src_addr'] = name
        elif map_type == 'dest-addr':
            found['dst_addr'] = name
        elif map_role == 'port':
            lname = name.lower()
            if 'src' in lname or 'source' in lname:
                found['src_port'] = name
            elif 'dst' in lname or 'dest' in lname:
                found['dst_port'] = name
        elif map_role == 'protocol':
            found['proto'] = name
        elif map_role == 'timestamp':
            found['timestamp'] = name
        elif map_role == 'bytes':
            found['byte_count'] = name

        if map_key in keyed:
            keyed[map_key].append(name)

    present = set(names)
    for role, patterns in FIELD_PATTERNS.items():
        if role in found:
            continue
        for pattern in patterns:
            if pattern in present:
                found[role] = pattern
                break

    def _keys(annotated: t.List[str], patterns: t.List[str]) -> t.Tuple[str, ...]:
        if annotated:
            return tuple(annotated)
        return tuple(p for p in patterns if p in present)

    if 'src_addr' not in found or 'dst_addr' not in found:
        return NetworkMapConfig(is_valid=False, fields=None)

    mapping = FieldMapping(
        src_addr=found['src_addr'],
        dst_addr=found['dst_addr'],
        src_port=found.get('src_port'),
        dst_port=found.get('dst_port'),
        proto=found.get('proto'),
        timestamp=found.get('timestamp'),
        byte_count=found.get('byte_count'),
        src_key_fields=_keys(keyed['source'], KEYING_FIELD_PATTERNS['src']),
        dst_key_fields=_keys(keyed['dest'], KEYING_FIELD_PATTERNS['dst']),
        shared_key_fields=_keys(keyed['shared'], KEYING_FIELD_PATTERNS['shared']),
    )
    return NetworkMapConfig(is_valid=True, fields=mapping)


_MISSING = object()


def lookup(record: t.Mapping[str, t.Any], name: t.Optional[str]) -> t.Any:
    """Resolve a dotted field name: flat key first, then nested mappings."""
    if not name:
        return None
    if name in record:
        return record[name]
    cur: t.Any = record
    for part in name.split('.'):
        if not isinstance(cur, t.Mapping):
            return None
        cur = cur.get(part, _MISSING)
        if cur is _MISSING:
            return None
    return cur


def normalize_address(value: t.Any) -> t.Optional[str]:
    """Canonical node key for an address, or None when unusable."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) in (4, 16):
            return str(ipaddress.ip_address(bytes(value)))
        try:
            value = bytes(value).decode('ascii')
        except UnicodeDecodeError:
            return None
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    # bracketed IPv6 literals and zone ids
    if s.startswith('[') and s.endswith(']'):
        s = s[1:-1]
    try:
        ip = ipaddress.ip_address(s.split('%', 1)[0])
    except ValueError:
        if any(c.isspace() for c in s):
            return None
        return s.lower()
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _parse_int(value: t.Any) -> t.Optional[int]:
    # raises ValueError on garbage; None means absent
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueError(f"not an integer: {value!r}")
        return int(value)
    if isinstance(value, str):
        return int(value.strip(), 10)
    raise ValueError(f"not an integer: {value!r}")


def parse_port(value: t.Any) -> t.Optional[int]:
    port = _parse_int(value)
    if port is not None and not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port


def parse_byte_count(value: t.Any) -> t.Optional[int]:
    # any non-negative finite number; fractions are truncated
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a byte count: {value!r}")
    if isinstance(value, str):
        value = float(value.strip())
    if not isinstance(value, (int, float)):
        raise ValueError(f"not a byte count: {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"not a byte count: {value!r}")
    return int(value)


def _optional(parse: t.Callable[[t.Any], t.Optional[int]], value: t.Any, what: str) -> t.Optional[int]:
    try:
        return parse(value)
    except ValueError:
        log.debug("treating unparsable %s %r as absent", what, value)
        return None


def normalize_protocol(value: t.Any) -> str:
    if value is None or value == '':
        return DEFAULT_PROTOCOL
    if isinstance(value, int) and not isinstance(value, bool):
        return PROTO_NUMBERS.get(value, str(value))
    s = str(value).strip()
    if s.isdigit():
        return PROTO_NUMBERS.get(int(s), s)
    return s.upper() or DEFAULT_PROTOCOL


def _parse_timestamp(value: t.Any) -> t.Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        try:
            f = float(value)
        except ValueError:
            return None
        return int(f) if math.isfinite(f) else None
    return None


def extract_tuple(raw_event: t.Any, fields: FieldMapping, default_timestamp: t.Optional[int] = None) -> t.Optional[ConnectionTuple]:
    """Extract a ConnectionTuple from one record.

    Returns None only when an address is missing or unparsable. Ports and
    byte counts that do not parse are treated as absent.
    """
    if not isinstance(raw_event, t.Mapping):
        return None
    src = normalize_address(lookup(raw_event, fields.src_addr))
    dst = normalize_address(lookup(raw_event, fields.dst_addr))
    if src is None or dst is None:
        return None
    src_port = _optional(parse_port, lookup(raw_event, fields.src_port), 'port')
    dst_port = _optional(parse_port, lookup(raw_event, fields.dst_port), 'port')
    byte_count = _optional(parse_byte_count, lookup(raw_event, fields.byte_count), 'byte count')

    ts = _parse_timestamp(lookup(raw_event, fields.timestamp))
    if ts is None:
        ts = default_timestamp

    return ConnectionTuple(
        src_addr=src,
        dst_addr=dst,
        src_port=src_port,
        dst_port=dst_port,
        protocol=normalize_protocol(lookup(raw_event, fields.proto)),
        timestamp=ts,
        byte_count=byte_count,
    )


def is_loopback(address: str) -> bool:
    if address in LOCALHOST_NAMES:
        return True
    try:
        return ipaddress.ip_address(address).is_loopback
    except ValueError:
        return False


def node_labels(raw_event: t.Mapping[str, t.Any], fields: FieldMapping, side: str, local: bool = False) -> t.Tuple[t.Tuple[str, str], ...]:
    """Display labels ``(short_field_name, value)`` for one endpoint.

    Keying fields come first in declaration order; the address itself is not
    included (it is always on the node).
    """
    if local:
        key_fields = fields.shared_key_fields
    elif side == 'src':
        key_fields = fields.src_key_fields
    else:
        key_fields = fields.dst_key_fields
    labels = []
    for name in key_fields:
        value = lookup(raw_event, name)
        if value:
            labels.append((name.split('.')[-1], str(value)))
    return tuple(labels)
