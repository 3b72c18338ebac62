from __future__ import annotations

import re
from typing import Optional

from authcore.service.errors import ValidationError

MAX_PASSWORD_LENGTH = 256

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: Optional[str]) -> str:
    """Lower-case and validate an email address; raises ValidationError."""
    value = (email or "").strip().lower()
    if not value or len(value) > 320 or not _EMAIL_RE.match(value):
        raise ValidationError("invalid email address", field="email", reason="invalid_format")
    return value


def check_password_policy(password: Optional[str], *, min_length: int = 8, email: Optional[str] = None) -> None:
    if not password:
        raise ValidationError("password is required", field="password", reason="required")
    if len(password) < min_length:
        raise ValidationError(
            f"password must be at least {min_length} characters",
            field="password",
            reason="too_short",
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at most {MAX_PASSWORD_LENGTH} characters",
            field="password",
            reason="too_long",
        )
    if password.isalpha() or password.isdigit():
        raise ValidationError(
            "password must mix letters with digits or symbols",
            field="password",
            reason="too_simple",
        )
    if email and password.strip().lower() == email.strip().lower():
        raise ValidationError(
            "password must not match the email address",
            field="password",
            reason="matches_email",
        )
