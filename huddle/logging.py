from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values never reach the log verbatim
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "code")
_PASSTHROUGH_KEYS = frozenset({"event", "error_code", "status_code", "error_count"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context.

    Also resets any per-request values bound by a previous request on the
    same context.
    """
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    return cid


def bind_principal(user_id: str) -> None:
    """Attach the authenticated user id to every later log line of the request."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _mask_secret(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key in _PASSTHROUGH_KEYS:
            continue
        lower_key = key.lower()
        value = event_dict[key]
        if "email" in lower_key and isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif any(marker in lower_key for marker in _SENSITIVE_KEYS):
            event_dict[key] = _mask_secret(value)
    return event_dict


def _configure_structlog(log_level: str = "INFO", development_mode: bool = False) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
