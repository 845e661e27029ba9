"""Fixed-capacity event buffer feeding the graph session.

The buffer keeps the newest `capacity` events. Its `version` counts every
push, so a reader that remembers the version it last consumed can ask for
only the new events. When the reader fell further behind than the buffer
holds (wraparound) or the buffer was cleared, the new events are no longer
separable and `since()` hands back the whole held window instead, flagged
as such.
"""
from __future__ import annotations

import collections
import typing as t


class EventRingBuffer:
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: t.Deque[t.Any] = collections.deque(maxlen=capacity)
        self._version = 0
        # version below which readers must take a full window
        self._epoch = 0

    def push(self, item: t.Any) -> None:
        self._items.append(item)
        self._version += 1

    def push_many(self, items: t.Iterable[t.Any]) -> None:
        for item in items:
            self.push(item)

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        # oldest first
        return iter(list(self._items))

    def is_full(self) -> bool:
        return len(self._items) == self.capacity

    def window(self) -> t.List[t.Any]:
        """All held events, oldest first."""
        return list(self._items)

    def newest(self, n: int) -> t.List[t.Any]:
        """The newest `n` events, oldest first."""
        if n <= 0:
            return []
        items = list(self._items)
        return items[-n:]

    def clear(self) -> None:
        self._items.clear()
        self._version += 1
        self._epoch = self._version

    def since(self, version: int) -> t.Tuple[t.List[t.Any], int, bool]:
        """Events pushed after `version`: ``(events, current_version, full_window)``.

        A negative `version` means the reader has consumed nothing yet.
        """
        current = self._version
        if version >= current:
            return [], current, False
        behind = current - version
        if version < 0 or version < self._epoch or behind > len(self._items):
            return self.window(), current, True
        return self.newest(behind), current, False
