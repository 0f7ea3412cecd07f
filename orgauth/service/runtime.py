from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from orgauth.config import Settings, get_settings, reset_settings_cache
from orgauth.logging import get_logger
from orgauth.service.audit import AuditLogger
from orgauth.service.auth import AuthService, ResetTokenSink
from orgauth.service.guards import RoleGuard, ScopeGuard, TokenGuard
from orgauth.service.passwords import PasswordVerifier
from orgauth.service.tokens import TokenService
from orgauth.storage.memory import MemoryStore
from orgauth.storage.memory_cache import MemoryCache
from orgauth.storage.postgres import PostgresStore
from orgauth.storage.redis_cache import RedisCache
from orgauth.storage.revocation import RevocationStore
from orgauth.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Composition root: builds every store, service and guard exactly once.

    The app receives a Runtime through ``create_app(runtime)``; nothing below
    it looks collaborators up globally.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        reset_token_sink: Optional[ResetTokenSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, MemoryCache] = self._build_cache()

        self.audit = AuditLogger(self.store)
        self.tokens = TokenService.from_settings(self.settings)
        self.passwords = PasswordVerifier.from_settings(self.settings)
        self.sessions = SessionStore(
            self.cache,
            ttl_seconds=self.settings.session_ttl_seconds,
            max_sessions=self.settings.max_sessions_per_user,
        )
        self.revocations = RevocationStore(self.cache)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.revocations,
            self.tokens,
            self.passwords,
            self.audit,
            self.settings,
            reset_token_sink=reset_token_sink,
        )
        self.token_guard = TokenGuard(
            self.tokens, self.sessions, self.revocations, self.audit
        )
        self.role_guard = RoleGuard(self.audit)
        self.scope_guard = ScopeGuard(
            self.store,
            self.audit,
            leader_policy=self.settings.leader_department_policy,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            leader_department_policy=self.settings.leader_department_policy.value,
            max_sessions_per_user=self.settings.max_sessions_per_user,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and token revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and revocations "
                "are process-local and vanish on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.audit.drain()
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime used by the default app."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh read of the environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
