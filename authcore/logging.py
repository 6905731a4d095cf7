"""structlog setup shared by every authcore module.

Log lines are JSON by default. ``LOG_DEV_MODE`` or ``LOG_JSON=false`` switches
to the coloured console renderer. Every entry carries the request's
correlation id, and fields whose names look like credentials or contact data
are masked before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

EventDict = Dict[str, Any]

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MASKED_FIELDS = ("password", "secret", "token", "api_key", "authorization", "email", "otp", "backup_code")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    _correlation_id.set(value)
    return value


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    value = _correlation_id.get()
    if value:
        event_dict["correlation_id"] = value
    return event_dict


def _redact_pii(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _MASKED_FIELDS):
            # first and last two characters survive
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    renderer: list = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer(colors=True)]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_security_event(
    name: str,
    *,
    severity: str = "info",
    logger: Optional[Any] = None,
    **fields: Any,
) -> None:
    """Write one ``security_event`` line; warning and above go out at WARNING."""
    log = logger or get_logger("security")
    emit = log.warning if severity in {"warning", "high", "critical"} else log.info
    emit("security_event", security_event=name, severity=severity, **fields)


_CLIENT_UNSAFE = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
        r"(?i)at\s+\S+\.\S+\(\S+:\d+\)",
        r"(?i)_internal_|_private_|__[a-z]+__",
    )
)

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub SQL, paths, inline credentials and traceback markers from a 5xx message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _CLIENT_UNSAFE:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_CLIENT_MESSAGE:
        error = error[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return error
