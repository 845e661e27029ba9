"""Recognised graph options and their defaults.

`ephemeral_port_threshold` changes edge identities, so a session that sees
it change must rebuild its graph. The fade/idle windows only affect how
activity states are computed on the next decay tick.
"""
from __future__ import annotations

import dataclasses
import typing as t

# Linux ephemeral range starts at 32768, IANA suggests 49152.
DEFAULT_EPHEMERAL_PORT_THRESHOLD = 32768

DEFAULT_PARAMS = {
    'ephemeral_port_threshold': DEFAULT_EPHEMERAL_PORT_THRESHOLD,
    'fade_after_ms': 1500,
    'idle_after_ms': 5000,
}

# presets selectable from the CLI; explicit flags win over these
PROFILES = {
    'default': {},
    'wide': {'ephemeral_port_threshold': 1024, 'fade_after_ms': 5000, 'idle_after_ms': 30000},
    'precise': {'ephemeral_port_threshold': 0},
}


@dataclasses.dataclass(frozen=True)
class MapOptions:
    ephemeral_port_threshold: int = DEFAULT_EPHEMERAL_PORT_THRESHOLD
    fade_after_ms: int = 1500
    idle_after_ms: int = 5000

    def __post_init__(self):
        for name in ('ephemeral_port_threshold', 'fade_after_ms', 'idle_after_ms'):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int):
                raise ValueError(f"{name} must be an integer, got {v!r}")
        if self.ephemeral_port_threshold < 0:
            raise ValueError("ephemeral_port_threshold must be >= 0 (0 disables collapsing)")
        if self.fade_after_ms <= 0:
            raise ValueError("fade_after_ms must be > 0")
        if self.idle_after_ms <= self.fade_after_ms:
            raise ValueError("idle_after_ms must be greater than fade_after_ms")

    @property
    def collapsing(self) -> bool:
        return self.ephemeral_port_threshold > 0

    def policy_differs(self, other: "MapOptions") -> bool:
        """True when switching to `other` invalidates existing edge identities."""
        return self.ephemeral_port_threshold != other.ephemeral_port_threshold

    @classmethod
    def from_params(cls, params: t.Optional[t.Dict[str, t.Any]] = None, profile: t.Optional[str] = None) -> "MapOptions":
        merged = dict(DEFAULT_PARAMS)
        if profile:
            if profile not in PROFILES:
                raise ValueError(f"unknown profile: {profile}")
            merged.update(PROFILES[profile])
        if params:
            # None means "not given" so presets survive
            merged.update({k: v for k, v in params.items() if v is not None and k in DEFAULT_PARAMS})
        return cls(**merged)


DEFAULT_OPTIONS = MapOptions()
