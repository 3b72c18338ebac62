from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows the in-process cache",
    )
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        description="Key material for at-rest encryption and keyed code digests",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Sessions
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")

    # Password reset / email verification
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # MFA
    mfa_issuer: str = env_field("authcore", "MFA_ISSUER")
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES")
    mfa_max_attempts: int = env_field(3, "MFA_MAX_ATTEMPTS")
    mfa_setup_ttl_minutes: int = env_field(10, "MFA_SETUP_TTL_MINUTES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")

    # Login throttling
    login_failure_limit: int = env_field(5, "LOGIN_FAILURE_LIMIT")
    login_failure_window_minutes: int = env_field(15, "LOGIN_FAILURE_WINDOW_MINUTES")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(10, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    # Security monitor
    security_scan_enabled: bool = env_field(True, "SECURITY_SCAN_ENABLED")
    security_scan_interval_seconds: int = env_field(900, "SECURITY_SCAN_INTERVAL_SECONDS")
    security_lookback_hours: int = env_field(24, "SECURITY_LOOKBACK_HOURS")
    security_location_threshold: int = env_field(3, "SECURITY_LOCATION_THRESHOLD")
    security_failure_threshold: int = env_field(10, "SECURITY_FAILURE_THRESHOLD")
    security_alert_cooldown_hours: int = env_field(24, "SECURITY_ALERT_COOLDOWN_HOURS")

    # Credential authority / identity providers
    credential_authority_url: str | None = env_field(None, "CREDENTIAL_AUTHORITY_URL")
    credential_authority_api_key: str | None = env_field(
        None, "CREDENTIAL_AUTHORITY_API_KEY"
    )
    provider_timeout_seconds: float = env_field(10.0, "PROVIDER_TIMEOUT_SECONDS")
    provider_max_attempts: int = env_field(3, "PROVIDER_MAX_ATTEMPTS")
    provider_backoff_seconds: float = env_field(0.2, "PROVIDER_BACKOFF_SECONDS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_microsoft_tenant: str = env_field("common", "OAUTH_MICROSOFT_TENANT")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    sso_state_ttl_minutes: int = env_field(10, "SSO_STATE_TTL_MINUTES")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authcore", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mfa_max_attempts", "login_failure_limit", "provider_max_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Encrypted MFA secrets must stay readable across restarts
        return _load_or_create_secret_key(Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore")))


def _load_or_create_secret_key(root: Path) -> str:
    key_file = root / ".secret_key"
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except OSError as exc:
        logger.warning("secret_key_dir_permissions", path=str(root), error=str(exc))

    if key_file.is_file() and not key_file.is_symlink():
        try:
            existing = key_file.read_text().strip()
        except OSError as exc:
            logger.error("secret_key_read_failed", path=str(key_file), error=str(exc))
        else:
            if len(existing) >= 32:
                return existing

    key = secrets.token_urlsafe(64)
    fd, staging = tempfile.mkstemp(dir=str(root), prefix=".secret_key.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(key)
        os.replace(staging, key_file)
    except OSError as exc:
        with contextlib.suppress(OSError):
            os.unlink(staging)
        logger.error("secret_key_persist_failed", path=str(key_file), error=str(exc))
        raise RuntimeError(
            "cannot persist a generated secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_key_generated", path=str(key_file))
    return key


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
