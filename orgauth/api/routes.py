from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Request

from orgauth.api.dependencies import (
    authorize_request,
    bearer_token,
    client_ip,
    get_runtime_dep,
    user_agent,
)
from orgauth.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OrganizationResponse,
    PasswordChangeRequest,
    PrincipalResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ScopeAccessResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from orgauth.logging import get_logger
from orgauth.service.auth import AuthResult, RegistrationInput, TokenPair
from orgauth.service.errors import NotFoundError
from orgauth.service.runtime import Runtime
from orgauth.service.tokens import AccessClaims
from orgauth.storage.models import Organization, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset link has been sent"


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role.value,
        status=user.status.value,
        organization_id=user.organization_id,
        assigned_branches=list(user.assigned_branches),
        assigned_departments=list(user.assigned_departments),
        last_login_at=user.last_login_at,
    )


def _organization_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        industry=org.industry,
        website=org.website,
        branches=[
            {"id": b.id, "name": b.name, "department_ids": list(b.department_ids)}
            for b in org.branches
        ],
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        session_id=tokens.session_id,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(result.user),
            tokens=_token_response(result.tokens),
            organization=(
                _organization_response(result.organization)
                if result.organization
                else None
            ),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Create an organization together with its OWNER and sign the owner in.

    Raises:
        409: If the email is already registered
        400: If the password fails the strength policy (all violations listed)
    """
    result = await runtime.auth.register(
        RegistrationInput(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            organization_name=body.organization_name,
            industry=body.industry,
            website=body.website,
        ),
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: Invalid credentials or inactive account
        400: Account locked (``details.locked_until`` says until when)
    """
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: TokenRefreshRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime_dep),
):
    result = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    claims: AccessClaims = Depends(authorize_request),
    token: Optional[str] = Depends(bearer_token),
    runtime: Runtime = Depends(get_runtime_dep),
):
    await runtime.auth.logout(
        claims.user_id,
        claims.session_id,
        token,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return Envelope(status="ok", data={"message": "Logged out"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    claims: AccessClaims = Depends(authorize_request),
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Change the caller's password; every other session is signed out."""
    await runtime.auth.change_password(
        claims.user_id,
        claims.session_id,
        body.current_password,
        body.new_password,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return Envelope(status="ok", data={"message": "Password changed"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime_dep),
):
    await runtime.auth.forgot_password(
        body.email,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    # Identical for known and unknown emails
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_MESSAGE})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime_dep),
):
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=client_ip(request, runtime),
        user_agent=user_agent(request),
    )
    return Envelope(status="ok", data={"message": "Password reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    claims: AccessClaims = Depends(authorize_request),
    runtime: Runtime = Depends(get_runtime_dep),
):
    user = runtime.store.get_user(claims.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return Envelope(
        status="ok",
        data={
            "user": _user_response(user),
            "principal": PrincipalResponse(
                user_id=claims.user_id,
                email=claims.email,
                role=claims.role.value,
                organization_id=claims.organization_id,
                session_id=claims.session_id,
                assigned_branches=list(claims.assigned_branches),
                assigned_departments=list(claims.assigned_departments),
            ),
        },
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    claims: AccessClaims = Depends(authorize_request),
    runtime: Runtime = Depends(get_runtime_dep),
):
    sessions = await runtime.auth.list_sessions(claims.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    created_at=s.created_at,
                    last_activity_at=s.last_activity_at,
                    ip_address=s.ip_address,
                    user_agent=s.user_agent,
                    current=s.id == claims.session_id,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(authorize_request),
    runtime: Runtime = Depends(get_runtime_dep),
):
    await runtime.auth.revoke_session(claims, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


@router.get("/organization", response_model=Envelope, tags=["organization"])
async def get_organization(
    claims: AccessClaims = Depends(authorize_request),
    runtime: Runtime = Depends(get_runtime_dep),
):
    org = runtime.store.get_organization(claims.organization_id)
    if org is None:
        raise NotFoundError("Organization not found")
    return Envelope(status="ok", data=_organization_response(org))


@router.get("/branches/{branch_id}/access", response_model=Envelope, tags=["scope"])
async def branch_access(
    branch_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(authorize_request),
):
    return Envelope(
        status="ok", data=ScopeAccessResponse(scope="BRANCH", scope_id=branch_id)
    )


@router.get(
    "/departments/{department_id}/access", response_model=Envelope, tags=["scope"]
)
async def department_access(
    department_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(authorize_request),
):
    return Envelope(
        status="ok",
        data=ScopeAccessResponse(scope="DEPARTMENT", scope_id=department_id),
    )
