"""
TTL cache for ephemeral realtime state (typing indicators).

Kept apart from the durable message/conversation maps: entries here are never
serialized and disappear on their own once their deadline passes.
"""

import time
from typing import Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class EphemeralCache(Generic[K, V]):
    """Key/value arena where every entry carries an expiry deadline."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl: Seconds an entry lives after its last put()
            clock: Monotonic time source; injectable for tests
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[K, Tuple[V, float]] = {}

    def put(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        """Insert or renew an entry. Renewal replaces the value and resets the deadline."""
        self._entries[key] = (value, self._clock() + (self.ttl if ttl is None else ttl))

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            del self._entries[key]
            return None
        return value

    def pop(self, key: K) -> Optional[V]:
        """Remove an entry, returning its value if it was still live."""
        entry = self._entries.pop(key, None)
        if entry is None or entry[1] <= self._clock():
            return None
        return entry[0]

    def items(self) -> List[Tuple[K, V]]:
        """Live entries, after sweeping expired ones."""
        self.sweep()
        return [(key, value) for key, (value, _) in self._entries.items()]

    def sweep(self) -> List[K]:
        """Drop expired entries; returns the keys that expired."""
        now = self._clock()
        expired = [key for key, (_, deadline) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]
        return expired

    def next_deadline(self) -> Optional[float]:
        """Earliest deadline among stored entries (clock units), or None when empty."""
        if not self._entries:
            return None
        return min(deadline for _, deadline in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self.items())

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]
