from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, Header, Request

from orgauth.logging import get_logger
from orgauth.service.errors import ServerError
from orgauth.service.guards import ROUTE_POLICIES, extract_bearer
from orgauth.service.runtime import Runtime, get_runtime
from orgauth.service.tokens import AccessClaims

logger = get_logger(__name__)

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def get_runtime_dep(request: Request) -> Runtime:
    runtime = request.app.state.runtime
    if runtime is None:
        runtime = request.app.state.runtime = get_runtime()
    return runtime


def client_ip(request: Request, runtime: Runtime) -> Optional[str]:
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # Left-most entry is the original client; proxies append to the right
            return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return extract_bearer(authorization)


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime_dep),
) -> AccessClaims:
    claims = await runtime.token_guard.authenticate(
        authorization, client_ip(request, runtime), user_agent(request)
    )
    request.state.claims = claims
    return claims


async def _json_body(request: Request) -> Optional[Any]:
    if request.method.upper() not in _BODY_METHODS:
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        return await request.json()
    except ValueError:
        return None


async def authorize_request(
    request: Request,
    claims: AccessClaims = Depends(authenticate),
    runtime: Runtime = Depends(get_runtime_dep),
) -> AccessClaims:
    """Apply the route's entry in ``ROUTE_POLICIES`` after authentication."""
    route = request.scope.get("route")
    template = getattr(route, "path", request.url.path)
    policy = ROUTE_POLICIES.get((request.method.upper(), template))
    if policy is None:
        logger.error("route_policy_missing", method=request.method, path=template)
        raise ServerError("route has no access policy")

    runtime.role_guard.authorize(claims, policy.roles, path=template)
    if policy.scope is not None:
        runtime.scope_guard.authorize(
            claims,
            policy.scope,
            request.path_params,
            await _json_body(request),
        )
    return claims


__all__ = [
    "authenticate",
    "authorize_request",
    "bearer_token",
    "client_ip",
    "get_runtime_dep",
    "user_agent",
]
