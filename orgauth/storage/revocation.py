from __future__ import annotations

from orgauth.logging import get_logger
from orgauth.storage.sessions import KeyValueCache

logger = get_logger(__name__)


class RevocationStore:
    """Denylist of access tokens revoked before their natural expiry.

    Entries live exactly as long as the token would have, so the store never
    grows past the set of still-valid tokens.
    """

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    @staticmethod
    def key(token_id: str) -> str:
        return f"auth:access:denylist:{token_id}"

    async def revoke(self, token_id: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            # Already past expiry; verification rejects it without our help
            return False
        await self.cache.set(self.key(token_id), "1", ttl_seconds)
        logger.info("access_token_revoked", token_id=token_id[:12], ttl_seconds=ttl_seconds)
        return True

    async def is_revoked(self, token_id: str) -> bool:
        return await self.cache.exists(self.key(token_id))


__all__ = ["RevocationStore"]
