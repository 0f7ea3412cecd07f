from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. State is per process, so
    it is only correct for a single instance.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}

    def _alive(self, expires_at: float) -> bool:
        return expires_at > self._clock()

    def _purge(self, key: str) -> None:
        entry = self._values.get(key)
        if entry and not self._alive(entry[1]):
            del self._values[key]
        index = self._sets.get(key)
        if index and not self._alive(index[1]):
            del self._sets[key]

    def _deadline(self, ttl_seconds: int) -> float:
        return self._clock() + max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge(key)
            entry = self._values.get(key)
            return entry[0] if entry else None

    async def mget(self, keys: Iterable[str]) -> List[Optional[str]]:
        return [await self.get(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._deadline(ttl_seconds))

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                self._purge(key)
                if self._values.pop(key, None) is not None:
                    deleted += 1
                if self._sets.pop(key, None) is not None:
                    deleted += 1
        return deleted

    async def smembers(self, index_key: str) -> Set[str]:
        with self._lock:
            self._purge(index_key)
            entry = self._sets.get(index_key)
            return set(entry[0]) if entry else set()

    async def set_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None:
        with self._lock:
            deadline = self._deadline(ttl_seconds)
            self._values[key] = (value, deadline)
            self._purge(index_key)
            members, _ = self._sets.get(index_key, (set(), deadline))
            members.add(member)
            self._sets[index_key] = (members, deadline)

    async def refresh_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str
    ) -> bool:
        with self._lock:
            self._purge(key)
            if key not in self._values:
                return False
            deadline = self._deadline(ttl_seconds)
            self._values[key] = (value, deadline)
            self._purge(index_key)
            entry = self._sets.get(index_key)
            if entry and entry[1] < deadline:
                self._sets[index_key] = (entry[0], deadline)
            return True

    async def delete_indexed(self, index_key: str, members: Dict[str, str]) -> int:
        deleted = 0
        with self._lock:
            for key, member in members.items():
                self._purge(key)
                if self._values.pop(key, None) is not None:
                    deleted += 1
                entry = self._sets.get(index_key)
                if entry:
                    entry[0].discard(member)
        return deleted

    async def drop_from_index(self, index_key: str, *members: str) -> None:
        with self._lock:
            entry = self._sets.get(index_key)
            if entry:
                entry[0].difference_update(members)


__all__ = ["MemoryCache"]
