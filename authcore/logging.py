from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation id for the request currently being served
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+)")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_email(value: Optional[str]) -> Optional[str]:
    """Mask the local part of an email address, keeping its first character and domain."""
    if not value or not isinstance(value, str):
        return value
    return _EMAIL_RE.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", value)


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials and email addresses in log entries."""
    secret_keys = {"password", "secret", "token", "api_key", "authorization", "code"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        if any(part in lower_key for part in secret_keys) and not lower_key.endswith("_id"):
            if len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
            else:
                event_dict[key] = "***"
        elif "email" in lower_key:
            event_dict[key] = redact_email(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE. Console
    rendering wins whenever dev mode is on or JSON is off.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Provider profile keys that never leave the service
_SENSITIVE_PROFILE_KEYS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "access_key",
)


def sanitize_response_data(data: Any, *, _depth: int = 0) -> Any:
    """Replace credential-looking values in a profile snapshot before it is returned.

    Snapshots are stored as the provider sent them, so a provider that echoes
    an ``id_token`` or ``access_token`` in userinfo must not leak it here.
    """
    if _depth > 20:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            normalized = str(key).lower().replace("-", "_").replace(" ", "_")
            if any(marker in normalized for marker in _SENSITIVE_PROFILE_KEYS):
                cleaned[key] = "[REDACTED]"
            else:
                cleaned[key] = sanitize_response_data(value, _depth=_depth + 1)
        return cleaned
    if isinstance(data, list):
        return [sanitize_response_data(item, _depth=_depth + 1) for item in data]
    return data
