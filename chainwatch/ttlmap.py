"""Small TTL map: key -> insertion time, with expiry sweep and a size cap.

Used by the dedup ledger (processed deposit hashes) and by the withdrawal
executor (transaction hashes already examined while looking for a
correlation tag).
"""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable, Iterator


class TTLMap:
    """
    Insert-with-timestamp map.

    Args:
        ttl: Seconds after which an entry counts as expired. None = never.
        max_size: When an insert would grow the map past this, the map is
                  cleared first. None = unbounded (rely on sweep()).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float | None = None,
        max_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[Hashable, float] = {}

    def set(self, key: Hashable) -> None:
        if self.max_size is not None and key not in self._entries \
                and len(self._entries) >= self.max_size:
            self._entries.clear()
        self._entries[key] = self._clock()

    # Set-style alias so a TTLMap can stand in wherever add()/in are expected
    add = set

    def age(self, key: Hashable) -> float | None:
        """Seconds since key was set, or None if absent."""
        stamp = self._entries.get(key)
        if stamp is None:
            return None
        return self._clock() - stamp

    def is_fresh(self, key: Hashable) -> bool:
        """True only if key is present and younger than ttl."""
        age = self.age(key)
        if age is None:
            return False
        return self.ttl is None or age < self.ttl

    def sweep(self) -> int:
        """Delete expired entries. Returns number deleted."""
        if self.ttl is None:
            return 0
        now = self._clock()
        expired = [k for k, stamp in self._entries.items() if now - stamp > self.ttl]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def discard(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._entries))
