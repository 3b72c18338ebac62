from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "invariant_violation",
    "service_unavailable",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _EmailPayload(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RegisterRequest(_EmailPayload):
    password: str = Field(..., max_length=1024)
    display_name: Optional[str] = Field(default=None, max_length=128)


class RegisterResponse(BaseModel):
    user_id: str
    email: str
    email_verified: bool


class LoginRequest(_EmailPayload):
    password: str = Field(..., max_length=1024)
    remember_me: bool = False
    mfa_method: Optional[str] = Field(default=None, max_length=16)


class SessionResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    auth_method: str


class MfaRequiredResponse(BaseModel):
    requires_mfa: bool = True
    challenge_id: str
    challenge_type: str
    expires_at: datetime
    attempts_remaining: int


class LogoutRequest(BaseModel):
    all_devices: bool = False


class SessionValidationResponse(BaseModel):
    valid: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class SsoStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., max_length=32)


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]
    expires_at: datetime


class MfaDisableRequest(BaseModel):
    code: str = Field(..., max_length=32, description="Current TOTP or backup code")


class MfaStatusResponse(BaseModel):
    enabled: bool
    devices: List[dict] = Field(default_factory=list)
    backup_codes_remaining: int = 0


class PasswordResetRequest(_EmailPayload):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=1024)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class EmailResendRequest(_EmailPayload):
    pass


class SessionInfo(BaseModel):
    id: str
    auth_method: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    current: bool = False


class IdentityInfo(BaseModel):
    id: str
    provider: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    is_verified: bool
    is_primary: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None
    profile: Optional[dict] = None


class UserProfile(BaseModel):
    id: str
    email: str
    email_verified: bool
    mfa_enabled: bool
    display_name: Optional[str] = None
    locale: Optional[str] = None
    timezone: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None
    last_login_method: Optional[str] = None
    identities: List[IdentityInfo] = Field(default_factory=list)
