from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AuthProvider(str, Enum):
    """Closed set of credential providers an identity can be bound to."""

    PASSWORD = "password"
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    GITHUB = "github"

    @property
    def is_sso(self) -> bool:
        return self is not AuthProvider.PASSWORD


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class ChallengeStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"


class MfaType(str, Enum):
    TOTP = "totp"
    EMAIL = "email"


class LoginFailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    UNKNOWN_ACCOUNT = "unknown_account"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_INACTIVE = "account_inactive"
    RATE_LIMITED = "rate_limited"
    MFA_FAILED = "mfa_failed"
    PROVIDER_ERROR = "provider_error"
    REGISTRATION_REJECTED = "registration_rejected"


# Failure reasons that count toward the per-email login throttle
COUNTED_FAILURES = frozenset(
    {LoginFailureReason.INVALID_CREDENTIALS.value, LoginFailureReason.UNKNOWN_ACCOUNT.value}
)


@dataclass
class User:
    id: str
    email: str
    email_verified: bool = False
    is_active: bool = True
    mfa_enabled: bool = False
    display_name: Optional[str] = None
    locale: Optional[str] = None
    timezone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_login_method: Optional[str] = None
    last_login_ip: Optional[str] = None


@dataclass
class AuthIdentity:
    id: str
    user_id: str
    provider: str
    provider_subject: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    profile: Dict | None = None
    is_verified: bool = False
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class UserSession:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    auth_method: str = AuthProvider.PASSWORD.value
    refresh_token_hash: Optional[str] = None
    remember_me: bool = False
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    last_activity_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    provider_refresh_token: Optional[str] = None

    def state(self, now: datetime) -> SessionState:
        if not self.is_active:
            return SessionState.REVOKED
        if self.expires_at <= now:
            return SessionState.EXPIRED
        return SessionState.ACTIVE


@dataclass
class LoginHistory:
    id: str
    email: str
    success: bool
    auth_method: str
    attempted_at: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None


@dataclass
class PasswordReset:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class MfaDevice:
    id: str
    user_id: str
    secret: str
    device_type: str = MfaType.TOTP.value
    backup_code_hashes: List[str] = field(default_factory=list)
    is_primary: bool = True
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    last_totp_step: Optional[int] = None


@dataclass
class MfaChallenge:
    id: str
    user_id: str
    expires_at: datetime
    challenge_type: str = MfaType.TOTP.value
    code_hash: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    status: str = ChallengeStatus.PENDING.value
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    remember_me: bool = False
    auth_method: str = AuthProvider.PASSWORD.value
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def effective_status(self, now: datetime) -> ChallengeStatus:
        status = ChallengeStatus(self.status)
        if status == ChallengeStatus.PENDING and self.expires_at <= now:
            return ChallengeStatus.EXPIRED
        return status

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


@dataclass
class PasswordCredential:
    """Password hash held by the built-in credential authority."""

    subject: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None
