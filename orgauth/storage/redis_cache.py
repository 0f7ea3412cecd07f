from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper exposing the primitives the session and
    revocation stores are built on."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl(ttl_seconds: int) -> int:
        # Redis rejects zero/negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the service starts taking traffic."""
        # A short-lived sync client avoids binding the async client to a
        # throwaway event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def mget(self, keys: Iterable[str]) -> List[Optional[str]]:
        keys = list(keys)
        if not keys:
            return []
        return await self.client.mget(keys)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=self._ttl(ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def smembers(self, index_key: str) -> Set[str]:
        return set(await self.client.smembers(index_key))

    async def set_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None:
        """Write ``key`` and record ``member`` in ``index_key`` in one round trip.

        The index outlives every member because each write pushes its expiry
        to the newest member's TTL.
        """
        ttl = self._ttl(ttl_seconds)
        pipe = self.client.pipeline()
        pipe.set(key, value, ex=ttl)
        pipe.sadd(index_key, member)
        pipe.expire(index_key, ttl)
        await pipe.execute()

    async def refresh_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str
    ) -> bool:
        """Overwrite ``key`` only if it still exists, sliding both expiries.

        Returns False when the key is gone, so a concurrent delete is never undone.
        """
        ttl = self._ttl(ttl_seconds)
        pipe = self.client.pipeline()
        pipe.set(key, value, ex=ttl, xx=True)
        pipe.expire(index_key, ttl)
        written, _ = await pipe.execute()
        return bool(written)

    async def delete_indexed(self, index_key: str, members: Dict[str, str]) -> int:
        """Delete each ``key -> member`` pair and drop the members from the index."""
        if not members:
            return 0
        pipe = self.client.pipeline()
        pipe.delete(*members.keys())
        pipe.srem(index_key, *members.values())
        deleted, _ = await pipe.execute()
        return int(deleted)

    async def drop_from_index(self, index_key: str, *members: str) -> None:
        if members:
            await self.client.srem(index_key, *members)


__all__ = ["RedisCache"]
