from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Set

from orgauth.logging import get_logger
from orgauth.storage.models import Session, utcnow

logger = get_logger(__name__)

SESSION_NOT_FOUND = "session_not_found"
IP_MISMATCH = "ip_mismatch"
USER_AGENT_MISMATCH = "user_agent_mismatch"


class KeyValueCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def mget(self, keys) -> List[Optional[str]]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def smembers(self, index_key: str) -> Set[str]: ...

    async def set_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None: ...

    async def refresh_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str
    ) -> bool: ...

    async def delete_indexed(self, index_key: str, members: dict) -> int: ...

    async def drop_from_index(self, index_key: str, *members: str) -> None: ...


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    reason: Optional[str] = None
    session: Optional[Session] = None


class SessionStore:
    """Live sessions keyed by ``(user_id, session_id)`` with a sliding TTL.

    Each user also has an index set of session ids so listing never scans the
    keyspace. Index members whose record has expired are pruned on read.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        *,
        ttl_seconds: int = 24 * 60 * 60,
        max_sessions: int = 3,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions

    @staticmethod
    def session_key(user_id: str, session_id: str) -> str:
        return f"session:{user_id}:{session_id}"

    @staticmethod
    def index_key(user_id: str) -> str:
        return f"session:index:{user_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Session]:
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", error=str(exc))
            return None

    async def create(
        self,
        session: Session,
        *,
        on_evicted: Optional[Callable[[Session], None]] = None,
    ) -> str:
        await self.cache.set_indexed(
            self.session_key(session.user_id, session.id),
            json.dumps(session.to_dict()),
            self.ttl_seconds,
            self.index_key(session.user_id),
            session.id,
        )
        evicted = await self.enforce_limit(session.user_id)
        for old in evicted:
            logger.info(
                "session_evicted",
                user_id=old.user_id,
                session_id=old.id,
                last_activity_at=old.last_activity_at.isoformat(),
            )
            if on_evicted is not None:
                on_evicted(old)
        return session.id

    async def get(self, user_id: str, session_id: str) -> Optional[Session]:
        return self._decode(await self.cache.get(self.session_key(user_id, session_id)))

    async def touch(self, user_id: str, session_id: str) -> Optional[Session]:
        """Record activity and restart the TTL. Returns None if the session is gone."""
        session = await self.get(user_id, session_id)
        if session is None:
            return None
        session.last_activity_at = utcnow()
        written = await self.cache.refresh_indexed(
            self.session_key(user_id, session_id),
            json.dumps(session.to_dict()),
            self.ttl_seconds,
            self.index_key(user_id),
        )
        return session if written else None

    async def delete(self, user_id: str, session_id: str) -> bool:
        deleted = await self.cache.delete_indexed(
            self.index_key(user_id),
            {self.session_key(user_id, session_id): session_id},
        )
        return deleted > 0

    async def delete_all(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        session_ids = await self.cache.smembers(self.index_key(user_id))
        doomed = {
            self.session_key(user_id, sid): sid
            for sid in session_ids
            if sid != except_session_id
        }
        return await self.cache.delete_indexed(self.index_key(user_id), doomed)

    async def list_by_user(self, user_id: str) -> List[Session]:
        """Live sessions for ``user_id``, most recently active first."""
        session_ids = sorted(await self.cache.smembers(self.index_key(user_id)))
        if not session_ids:
            return []
        raw_records = await self.cache.mget(
            [self.session_key(user_id, sid) for sid in session_ids]
        )
        sessions: List[Session] = []
        stale: List[str] = []
        for sid, raw in zip(session_ids, raw_records):
            session = self._decode(raw)
            if session is None:
                stale.append(sid)
            else:
                sessions.append(session)
        if stale:
            await self.cache.drop_from_index(self.index_key(user_id), *stale)
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return sessions

    async def enforce_limit(self, user_id: str) -> List[Session]:
        """Delete the least recently active sessions beyond the cap."""
        sessions = await self.list_by_user(user_id)
        overflow = sessions[self.max_sessions:]
        if overflow:
            await self.cache.delete_indexed(
                self.index_key(user_id),
                {self.session_key(user_id, s.id): s.id for s in overflow},
            )
        return overflow

    async def validate(
        self,
        user_id: str,
        session_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> SessionValidation:
        session = await self.get(user_id, session_id)
        if session is None:
            return SessionValidation(valid=False, reason=SESSION_NOT_FOUND)
        if session.ip_address != ip_address:
            return SessionValidation(valid=False, reason=IP_MISMATCH, session=session)
        if session.user_agent != user_agent:
            return SessionValidation(
                valid=False, reason=USER_AGENT_MISMATCH, session=session
            )
        return SessionValidation(valid=True, session=session)


__all__ = [
    "SESSION_NOT_FOUND",
    "IP_MISMATCH",
    "USER_AGENT_MISMATCH",
    "KeyValueCache",
    "SessionStore",
    "SessionValidation",
]
