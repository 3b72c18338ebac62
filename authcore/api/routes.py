from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response

from authcore.api.schemas import (
    EmailResendRequest,
    EmailVerificationRequest,
    Envelope,
    IdentityInfo,
    LoginRequest,
    LogoutRequest,
    MfaDisableRequest,
    MfaRequiredResponse,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    SessionResponse,
    SessionValidationResponse,
    SsoStartResponse,
    TokenRefreshRequest,
    UserProfile,
)
from authcore.logging import get_logger, sanitize_response_data
from authcore.service.auth import AuthResult
from authcore.service.runtime import get_runtime
from authcore.service.sessions import IssuedSession
from authcore.storage.models import AuthIdentity, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Token-bucket throttle backed by the session cache; raises 429 when empty."""
    allowed, remaining, reset_seconds = await runtime.cache.check_rate_limit(
        key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("endpoint_rate_limited", key=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": max(1, reset_seconds)},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


def _extract_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return cookie_token or None


@dataclass
class AuthContext:
    user_id: str
    session_id: str


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.session_cookie_name)
    result = await runtime.auth.validate(_extract_token(authorization, cookie_token))
    if not result.valid:
        raise _http_error(
            "unauthorized", "invalid session", status_code=401, details={"reason": result.reason}
        )
    return AuthContext(user_id=result.user_id, session_id=result.session_id)


def _apply_session_cookies(response: Response, issued: IssuedSession) -> None:
    runtime = get_runtime()
    secure = runtime.settings.app_base_url.startswith("https://")
    response.set_cookie(
        runtime.settings.session_cookie_name,
        issued.token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=issued.session.expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        issued.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=issued.session.expires_at,
        path="/v1/auth",
    )


def _clear_session_cookies(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")


def _session_payload(issued: IssuedSession) -> SessionResponse:
    return SessionResponse(
        user_id=issued.session.user_id,
        session_id=issued.session.id,
        session_expires_at=issued.session.expires_at,
        access_token=issued.token,
        refresh_token=issued.refresh_token,
        auth_method=issued.session.auth_method,
    )


def _auth_result_payload(result: AuthResult, response: Response) -> dict:
    if result.requires_mfa:
        challenge = result.challenge
        return MfaRequiredResponse(
            challenge_id=challenge.id,
            challenge_type=challenge.challenge_type,
            expires_at=challenge.expires_at,
            attempts_remaining=challenge.attempts_remaining,
        ).model_dump(mode="json")
    _apply_session_cookies(response, result.session)
    payload = _session_payload(result.session).model_dump(mode="json")
    payload["requires_mfa"] = False
    return payload


def _identity_info(identity: AuthIdentity) -> IdentityInfo:
    return IdentityInfo(
        id=identity.id,
        provider=identity.provider,
        email=identity.email,
        display_name=identity.display_name,
        is_verified=identity.is_verified,
        is_primary=identity.is_primary,
        created_at=identity.created_at,
        last_used_at=identity.last_used_at,
        profile=sanitize_response_data(identity.profile) if identity.profile else None,
    )


def _user_profile(user: User, identities: list[AuthIdentity]) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        mfa_enabled=user.mfa_enabled,
        display_name=user.display_name,
        locale=user.locale,
        timezone=user.timezone,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        last_login_method=user.last_login_method,
        identities=[_identity_info(i) for i in identities],
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a password account; the address must be verified before login."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request) or 'unknown'}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(
        body.email,
        body.password,
        display_name=body.display_name,
        ip_addr=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=user.id, email=user.email, email_verified=user.email_verified
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password sign-in.

    Returns a session, or ``requires_mfa`` with a challenge id when the
    account has a second factor.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_addr=_client_ip(request),
        user_agent=_user_agent(request),
        mfa_method=body.mfa_method,
    )
    return Envelope(status="ok", data=_auth_result_payload(result, response))


@router.get("/auth/sso/{provider}/authorize", response_model=Envelope, tags=["auth"])
async def sso_authorize(
    request: Request,
    provider: str = Path(..., max_length=32),
    return_url: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"sso:start:{_client_ip(request) or 'unknown'}", 20, 60
    )
    start = await runtime.auth.sso_authorization_url(provider, return_url=return_url)
    return Envelope(status="ok", data=SsoStartResponse(**start))


@router.get("/auth/sso/{provider}/callback", response_model=Envelope, tags=["auth"])
async def sso_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    """Complete an SSO sign-in or a pending identity link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"sso:callback:{_client_ip(request) or 'unknown'}", 10, 60
    )
    result = await runtime.auth.sso_callback(
        provider,
        code,
        state,
        ip_addr=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if result.session is None and not result.requires_mfa:
        data = {
            "linked": True,
            "identity": _identity_info(result.identity).model_dump(mode="json"),
        }
    else:
        data = _auth_result_payload(result, response)
        data["created"] = result.created
        data["linked"] = result.linked
    data["return_url"] = result.return_url
    return Envelope(status="ok", data=data)


@router.post("/auth/sso/{provider}/link", response_model=Envelope, tags=["identities"])
async def sso_link(
    provider: str = Path(..., max_length=32),
    return_url: Optional[str] = Query(None, max_length=2048),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    start = await runtime.auth.link_sso(principal.user_id, provider, return_url=return_url)
    return Envelope(status="ok", data=SsoStartResponse(**start))


@router.post("/auth/mfa/challenge/{challenge_id}/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa_challenge(
    body: MfaVerifyRequest,
    response: Response,
    challenge_id: str = Path(..., max_length=64),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{challenge_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.verify_mfa(challenge_id, body.code)
    return Envelope(status="ok", data=_auth_result_payload(result, response))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    all_devices = bool(body and body.all_devices)
    revoked = await runtime.auth.logout(
        principal.user_id, principal.session_id, all_devices=all_devices
    )
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"revoked": revoked, "all_devices": all_devices})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def validate_session(
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Validate a session token for collaborating services; never raises 401."""
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.session_cookie_name)
    result = await runtime.auth.validate(_extract_token(authorization, cookie_token))
    return Envelope(
        status="ok",
        data=SessionValidationResponse(
            valid=result.valid,
            user_id=result.user_id if result.valid else None,
            session_id=result.session_id if result.valid else None,
            expires_at=result.expires_at if result.valid else None,
            reason=result.reason,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = body.refresh_token if body else refresh_cookie
    issued = await runtime.auth.refresh(
        token, ip_addr=_client_ip(request), user_agent=_user_agent(request)
    )
    _apply_session_cookies(response, issued)
    return Envelope(status="ok", data=_session_payload(issued))


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    setup = await runtime.auth.start_mfa_setup(principal.user_id)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            backup_codes=setup.backup_codes,
            expires_at=setup.expires_at,
        ),
    )


@router.post("/auth/mfa/setup/verify", response_model=Envelope, tags=["mfa"])
async def mfa_setup_verify(
    body: MfaVerifyRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:setup:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    device = await runtime.auth.confirm_mfa_setup(principal.user_id, body.code)
    return Envelope(status="ok", data={"enabled": True, "device_id": device.id})


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=MfaStatusResponse(**runtime.auth.mfa_status(principal.user_id))
    )


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MfaDisableRequest, principal: AuthContext = Depends(get_principal)):
    """Disable MFA; requires a current TOTP or backup code and signs out other sessions."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:disable:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    revoked = await runtime.auth.disable_mfa(
        principal.user_id, body.code, session_id=principal.session_id
    )
    return Envelope(status="ok", data={"enabled": False, "sessions_revoked": revoked})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def password_reset_request(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:ip:{_client_ip(request) or 'unknown'}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password-reset/complete", response_model=Envelope, tags=["auth"])
async def password_reset_complete(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request) or 'unknown'}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    revoked = await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset", "sessions_revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def password_change(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, principal.session_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed", "sessions_revoked": revoked})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def email_verify(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request) or 'unknown'}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"user_id": user.id, "email_verified": True})


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def email_resend(body: EmailResendRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:resend:{body.email.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data={
            "items": [
                SessionInfo(
                    id=s.id,
                    auth_method=s.auth_method,
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                    last_activity_at=s.last_activity_at,
                    ip_addr=s.ip_addr,
                    user_agent=s.user_agent,
                    remember_me=s.remember_me,
                    current=s.id == principal.session_id,
                ).model_dump(mode="json")
                for s in sessions
            ]
        },
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"revoked": session_id})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_other_sessions(principal.user_id, principal.session_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/identities", response_model=Envelope, tags=["identities"])
async def list_identities(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    identities = runtime.auth.list_identities(principal.user_id)
    return Envelope(
        status="ok",
        data={"items": [_identity_info(i).model_dump(mode="json") for i in identities]},
    )


@router.delete("/identities/{identity_id}", response_model=Envelope, tags=["identities"])
async def unlink_identity(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    removed = await runtime.auth.unlink_identity(principal.user_id, identity_id)
    return Envelope(status="ok", data={"removed": removed.id, "provider": removed.provider})


@router.post("/identities/{identity_id}/primary", response_model=Envelope, tags=["identities"])
async def set_primary_identity(
    identity_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    identity = runtime.auth.set_primary_identity(principal.user_id, identity_id)
    return Envelope(status="ok", data=_identity_info(identity))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.auth.me(principal.user_id)
    identities = runtime.auth.list_identities(principal.user_id)
    return Envelope(status="ok", data=_user_profile(user, identities))
