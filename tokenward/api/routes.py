from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from tokenward.api.schemas import (
    AuthResponse,
    DeviceStatsResponse,
    Envelope,
    LocationStatsResponse,
    LoginAttemptsResetResponse,
    LoginRequest,
    LogoutRequest,
    RateLimitsResponse,
    RegisterRequest,
    RevokeResponse,
    SecurityOverviewResponse,
    SecurityStatusResponse,
    SessionListResponse,
    SessionResponse,
    SuspiciousSessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from tokenward.logging import get_logger
from tokenward.service.admission import EndpointClass
from tokenward.service.devices import (
    device_stats,
    location_stats,
    security_overview,
    session_security_level,
)
from tokenward.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from tokenward.service.runtime import get_runtime
from tokenward.storage.models import (
    IssuedSession,
    RequestContext,
    Session,
    TokenPair,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class AuthContext:
    user: User
    session: Session


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authorization header must use the Bearer scheme")
    return token.strip()


def admission_gate(endpoint_class: EndpointClass) -> Callable:
    """Build a dependency that counts the request against ``endpoint_class``.

    Rejections raise ``RateLimitedError`` before the handler body runs.
    """

    async def _gate(request: Request, response: Response) -> None:
        _admit(endpoint_class, request, response)

    return _gate


def _admit(
    endpoint_class: EndpointClass,
    request: Request,
    response: Response,
    identity: Optional[str] = None,
) -> None:
    runtime = get_runtime()
    result = runtime.admission.check(
        endpoint_class,
        ip=_client_ip(request),
        route=request.url.path,
        method=request.method,
        identity=identity,
    )
    if runtime.admission.policy.enforce:
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    session, user = await runtime.sessions.validate_access(_bearer_token(authorization))
    return AuthContext(user=user, session=session)


async def admin_gate(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    """Count admin requests per address and admin, then require the admin role.

    Several admins behind one NAT address each get their own window.
    """

    _admit(EndpointClass.ADMIN, request, response, identity=principal.user.id)
    if principal.user.role != "admin":
        raise ForbiddenError("admin role required")
    return principal


def _token_pair_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        access_token_expires_at=tokens.access_token_expires_at,
        refresh_token_expires_at=tokens.refresh_token_expires_at,
    )


def _auth_response(user: User, issued: IssuedSession) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        session_id=issued.session_id,
        session_expires_at=issued.expires_at,
        tokens=_token_pair_response(issued.tokens),
    )


def _session_response(session: Session, current_session_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        is_active=session.is_active,
        is_current=session.id == current_session_id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        device_info=asdict(session.device_info),
        location=asdict(session.location),
        security_level=session_security_level(session),
    )


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.AUTH))],
)
async def register(body: RegisterRequest, request: Request):
    """Create an account and open its first session."""
    runtime = get_runtime()
    user, issued = await runtime.auth.register(
        body.email, body.password, _request_context(request)
    )
    return Envelope(status="ok", data=_auth_response(user, issued))


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.AUTH))],
)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        423: account temporarily locked after repeated failures
        429: too many auth requests from this address
    """
    runtime = get_runtime()
    user, issued = await runtime.auth.login(
        body.email, body.password, _request_context(request)
    )
    return Envelope(status="ok", data=_auth_response(user, issued))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.AUTH))],
)
async def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token into a new token pair; each token works once."""
    runtime = get_runtime()
    tokens = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_pair_response(tokens))


@router.post(
    "/auth/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.GENERAL))],
)
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    if body and body.all_devices:
        revoked = await runtime.sessions.revoke_all(principal.user.id)
    else:
        await runtime.sessions.revoke(principal.session.id)
        revoked = 1
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.get(
    "/auth/security-status",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def security_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.lock_guard.security_status(principal.user)
    active = await runtime.sessions.active_sessions_count(principal.user.id)
    return Envelope(
        status="ok", data=SecurityStatusResponse(**status, active_sessions=active)
    )


@router.get(
    "/auth/rate-limits",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def rate_limits(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=RateLimitsResponse(
            rules=runtime.admission.describe(),
            enforced=runtime.admission.policy.enforce,
        ),
    )


@router.get(
    "/sessions",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.sessions.get_active_sessions(principal.user.id)
    items = [_session_response(s, principal.session.id) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(sessions=items, total=len(items)))


@router.get(
    "/sessions/stats/devices",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def session_device_stats(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.sessions.get_active_sessions(principal.user.id)
    return Envelope(status="ok", data=DeviceStatsResponse(**device_stats(sessions)))


@router.get(
    "/sessions/stats/locations",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def session_location_stats(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.sessions.get_active_sessions(principal.user.id)
    return Envelope(status="ok", data=LocationStatsResponse(**location_stats(sessions)))


@router.get(
    "/sessions/security-overview",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def session_security_overview(principal: AuthContext = Depends(get_principal)):
    """Summarise active sessions by trust level and list the low-trust ones."""
    runtime = get_runtime()
    sessions = await runtime.sessions.get_active_sessions(principal.user.id)
    overview = security_overview(sessions, runtime.sessions.now())
    suspicious = [
        SuspiciousSessionResponse(
            session_id=item["session_id"],
            reason=item["reason"],
            device_info=asdict(item["device_info"]),
            location=asdict(item["location"]),
            last_activity=item["last_activity"],
        )
        for item in overview["suspicious_sessions"]
    ]
    return Envelope(
        status="ok",
        data=SecurityOverviewResponse(
            total_sessions=overview["total_sessions"],
            security_levels=overview["security_levels"],
            suspicious_sessions=suspicious,
        ),
    )


@router.get(
    "/sessions/{session_id}",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.READ_ONLY))],
)
async def get_session_details(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    target = await runtime.sessions.get_session(session_id, principal.user.id)
    if not target:
        raise NotFoundError("session not found")
    return Envelope(status="ok", data=_session_response(target, principal.session.id))


@router.delete(
    "/sessions/{session_id}",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.GENERAL))],
)
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    target = await runtime.sessions.get_session(session_id, principal.user.id)
    if not target:
        raise NotFoundError("session not found")
    await runtime.sessions.revoke(target.id)
    return Envelope(status="ok", data=RevokeResponse(revoked=1 if target.is_active else 0))


@router.post(
    "/sessions/revoke-others",
    response_model=Envelope,
    tags=["sessions"],
    dependencies=[Depends(admission_gate(EndpointClass.GENERAL))],
)
async def revoke_other_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.sessions.revoke_all(
        principal.user.id, except_session_id=principal.session.id
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post(
    "/auth/reset-login-attempts/{user_id}",
    response_model=Envelope,
    tags=["auth"],
)
async def reset_login_attempts(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(admin_gate),
):
    """Clear a user's failed-login counter and any lock (admin only)."""
    runtime = get_runtime()
    target = runtime.store.get_user(user_id)
    if not target:
        raise NotFoundError("user not found")
    updated = runtime.lock_guard.record_success(target)
    logger.info("login_attempts_reset", admin_id=principal.user.id, user_id=updated.id)
    return Envelope(
        status="ok",
        data=LoginAttemptsResetResponse(
            user_id=updated.id, login_attempts=updated.login_attempts, is_locked=False
        ),
    )
