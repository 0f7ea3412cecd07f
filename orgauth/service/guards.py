from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from orgauth.config import LeaderDepartmentPolicy
from orgauth.logging import get_logger
from orgauth.service.audit import AuditEventType, AuditLogger
from orgauth.service.errors import ForbiddenError, ScopeForbidden, TokenRejected
from orgauth.service.tokens import AccessClaims, TokenService, token_id
from orgauth.storage.models import Role, ScopeKind
from orgauth.storage.revocation import RevocationStore
from orgauth.storage.sessions import (
    IP_MISMATCH,
    SESSION_NOT_FOUND,
    USER_AGENT_MISMATCH,
    SessionStore,
)

logger = get_logger(__name__)

MISSING_TOKEN = "missing_token"
TOKEN_REVOKED = "token_revoked"


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class TokenGuard:
    """First link of the guard chain: bearer token to verified claims.

    Checks run in a fixed order and the first failure wins: signature and
    expiry, revocation, claim shape, session binding. A passing request also
    slides its session TTL.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionStore,
        revocations: RevocationStore,
        audit: AuditLogger,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.revocations = revocations
        self.audit = audit

    async def authenticate(
        self,
        authorization: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> AccessClaims:
        token = extract_bearer(authorization)
        if token is None:
            raise TokenRejected(MISSING_TOKEN)

        claims = self.tokens.verify_access_token(token)
        if await self.revocations.is_revoked(token_id(token)):
            raise TokenRejected(TOKEN_REVOKED)

        check = await self.sessions.validate(
            claims.user_id, claims.session_id, ip_address, user_agent
        )
        if not check.valid:
            if check.reason in (IP_MISMATCH, USER_AGENT_MISMATCH):
                self._report_hijack(claims, check.reason, ip_address, user_agent)
            raise TokenRejected(check.reason)

        if await self.sessions.touch(claims.user_id, claims.session_id) is None:
            # Deleted between validate and touch, e.g. a concurrent logout
            raise TokenRejected(SESSION_NOT_FOUND)
        return claims

    def _report_hijack(
        self,
        claims: AccessClaims,
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        logger.warning(
            "session_binding_mismatch",
            user_id=claims.user_id,
            session_id=claims.session_id,
            reason=reason,
            ip_address=ip_address,
        )
        self.audit.record(
            AuditEventType.SESSION_HIJACKING_DETECTED,
            success=False,
            user_id=claims.user_id,
            organization_id=claims.organization_id,
            email=claims.email,
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"session_id": claims.session_id, "reason": reason},
        )


@dataclass(frozen=True)
class ScopeRequirement:
    """Which scope a route targets and where to find the target id.

    The id is read from the path parameter ``param`` first, then from the JSON
    body field of the same name.
    """

    kind: ScopeKind
    param: str


@dataclass(frozen=True)
class RoutePolicy:
    roles: Optional[FrozenSet[Role]] = None
    scope: Optional[ScopeRequirement] = None


class RoleGuard:
    def __init__(self, audit: AuditLogger) -> None:
        self.audit = audit

    def authorize(
        self,
        claims: AccessClaims,
        roles: Optional[FrozenSet[Role]],
        *,
        path: Optional[str] = None,
    ) -> None:
        if not roles or claims.role in roles:
            return
        logger.info(
            "permission_denied", user_id=claims.user_id, role=claims.role.value, path=path
        )
        self.audit.record(
            AuditEventType.PERMISSION_DENIED,
            success=False,
            user_id=claims.user_id,
            organization_id=claims.organization_id,
            detail={
                "role": claims.role.value,
                "required": sorted(role.value for role in roles),
                "path": path,
            },
        )
        raise ForbiddenError(
            "Insufficient role",
            detail={"required": sorted(role.value for role in roles)},
        )


class ScopeGuard:
    """Branch/department access for an authenticated caller.

    OWNER passes everything. LEADER is scoped by branch and MANAGER by
    department; LEADER on a department route follows ``leader_policy``.
    """

    def __init__(
        self,
        store: Any,
        audit: AuditLogger,
        *,
        leader_policy: LeaderDepartmentPolicy = LeaderDepartmentPolicy.UNRESTRICTED,
    ) -> None:
        self.store = store
        self.audit = audit
        self.leader_policy = LeaderDepartmentPolicy(leader_policy)

    @staticmethod
    def target_id(
        requirement: ScopeRequirement,
        path_params: Optional[Mapping[str, Any]],
        body: Optional[Mapping[str, Any]],
    ) -> Optional[str]:
        value = (path_params or {}).get(requirement.param)
        if value in (None, "") and isinstance(body, Mapping):
            value = body.get(requirement.param)
        if value in (None, ""):
            return None
        return str(value)

    def authorize(
        self,
        claims: AccessClaims,
        requirement: Optional[ScopeRequirement],
        path_params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if requirement is None or claims.role is Role.OWNER:
            return
        target = self.target_id(requirement, path_params, body)
        if target is None:
            # Nothing names a scope, so there is nothing to restrict
            return

        kind = requirement.kind
        if claims.role is Role.LEADER and kind is ScopeKind.BRANCH:
            if target not in claims.assigned_branches:
                self._deny(claims, kind, target, "Branch access denied")
            return
        if claims.role is Role.MANAGER and kind is ScopeKind.DEPARTMENT:
            if target not in claims.assigned_departments:
                self._deny(claims, kind, target, "Department access denied")
            return
        if claims.role is Role.LEADER and kind is ScopeKind.DEPARTMENT:
            if self.leader_policy is LeaderDepartmentPolicy.UNRESTRICTED:
                return
            branch_id = self.store.get_department_branch(claims.organization_id, target)
            if branch_id is None or branch_id not in claims.assigned_branches:
                self._deny(
                    claims, kind, target, "Department is outside your assigned branches"
                )
            return
        self._deny(
            claims,
            kind,
            target,
            f"Role {claims.role.value} cannot access {kind.value.lower()} scope",
        )

    def _deny(
        self, claims: AccessClaims, kind: ScopeKind, target: str, message: str
    ) -> None:
        logger.info(
            "scope_violation",
            user_id=claims.user_id,
            role=claims.role.value,
            scope=kind.value,
            scope_id=target,
        )
        self.audit.record(
            AuditEventType.SCOPE_VIOLATION,
            success=False,
            user_id=claims.user_id,
            organization_id=claims.organization_id,
            detail={"role": claims.role.value, "scope": kind.value, "scope_id": target},
        )
        raise ScopeForbidden(message, kind=kind.value, scope_id=target)


_AUTHENTICATED = RoutePolicy()

# (method, route path template) -> policy; every route that depends on
# ``authorize_request`` must appear here
ROUTE_POLICIES: Dict[Tuple[str, str], RoutePolicy] = {
    ("POST", "/v1/auth/logout"): _AUTHENTICATED,
    ("POST", "/v1/auth/change-password"): _AUTHENTICATED,
    ("GET", "/v1/auth/me"): _AUTHENTICATED,
    ("GET", "/v1/auth/sessions"): _AUTHENTICATED,
    ("DELETE", "/v1/auth/sessions/{session_id}"): _AUTHENTICATED,
    ("GET", "/v1/organization"): RoutePolicy(roles=frozenset({Role.OWNER})),
    ("GET", "/v1/branches/{branch_id}/access"): RoutePolicy(
        roles=frozenset({Role.OWNER, Role.LEADER, Role.MANAGER}),
        scope=ScopeRequirement(ScopeKind.BRANCH, "branch_id"),
    ),
    ("GET", "/v1/departments/{department_id}/access"): RoutePolicy(
        scope=ScopeRequirement(ScopeKind.DEPARTMENT, "department_id"),
    ),
}


__all__ = [
    "MISSING_TOKEN",
    "TOKEN_REVOKED",
    "ROUTE_POLICIES",
    "RoleGuard",
    "RoutePolicy",
    "ScopeGuard",
    "ScopeRequirement",
    "TokenGuard",
    "extract_bearer",
]
