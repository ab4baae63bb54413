"""Bounded cache of recently seen event keys."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Hashable


class RecentKeyCache:
    """Remembers the last ``capacity`` keys, evicting the oldest first."""

    def __init__(self, capacity: int = 500) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._keys: OrderedDict[Hashable, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def check_and_add(self, key: Hashable) -> bool:
        """Record ``key``. Returns True if it was already present (a duplicate)."""
        if key in self._keys:
            return True
        self._keys[key] = None
        if len(self._keys) > self._capacity:
            self._keys.popitem(last=False)
        return False
