from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Client-supplied X-Request-ID values are echoed and logged, so keep them tame
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation ID, generating one if absent or unusable."""
    if not correlation_id or not _REQUEST_ID_PATTERN.match(correlation_id):
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# Values under these keys are dropped entirely
_SECRET_KEYS = ("password", "secret", "authorization", "access_token", "refresh_token")
# Values under these keys are masked but stay recognisable
_PII_KEYS = ("email", "ssn")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask PII before anything is rendered."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str) and any(marker in lower_key for marker in _PII_KEYS):
            event_dict[key] = _mask_email(value) if "email" in lower_key else "***"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    JSON lines by default; ``development_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_UNSAFE_ERROR_FRAGMENTS = [
    re.compile(r"(?i)\bbearer\s+\S+"),
    re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"(?i)rediss?://\S+"),
    re.compile(r"(?i)(password|secret|token|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)/(?:home|root|var|etc|usr|opt|tmp)/\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip tokens, connection strings, credentials and paths from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _UNSAFE_ERROR_FRAGMENTS:
        error = pattern.sub(replacement, error)
    if len(error) > 500:
        error = error[:497] + "..."
    return error
