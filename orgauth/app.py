from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from orgauth.api.error_handling import register_exception_handlers
from orgauth.api.routes import router
from orgauth.config import Settings, get_settings
from orgauth.logging import get_logger, set_correlation_id
from orgauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; never a wildcard alongside credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def _resolve_runtime(app: FastAPI) -> Runtime:
    if app.state.runtime is None:
        app.state.runtime = get_runtime()
    return app.state.runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = _resolve_runtime(app)
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP app around ``runtime``.

    Without a runtime the process-wide one is created on first use, which is
    what the module-level ``app`` does under uvicorn.
    """
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="orgauth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Token-bearing responses must never land in a shared cache
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    # Registered last so it runs outermost and the id covers every log line
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Liveness plus database and session-cache reachability."""
        current = _resolve_runtime(app)

        async def _probe(label: str, func) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _probe("database", current.store.verify_connection)
        cache_ok = await _probe("cache", current.cache.verify_connection)
        return {
            "status": "healthy" if db_ok and cache_ok else "unhealthy",
            "checks": {
                "database": {"status": "healthy" if db_ok else "unhealthy"},
                "cache": {"status": "healthy" if cache_ok else "unhealthy"},
            },
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orgauth.app:app",
        host="0.0.0.0",
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )
