from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Per-request / per-frame correlation id
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


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
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Matches authorization, x-shareable-token, shareable_token, client_auth_secret, ...
_REDACTED_KEYS = ("secret", "token", "authorization", "password", "api_key", "shareable")


def _is_sensitive(key: Any) -> bool:
    lower_key = str(key).lower()
    return any(marker in lower_key for marker in _REDACTED_KEYS)


def _mask_value(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 4:
        # Keep first/last 2 chars for debugging
        return value[:2] + "***" + value[-2:]
    if isinstance(value, str):
        return "***"
    return value


def _redact_mapping(mapping: Mapping[Any, Any]) -> Dict[Any, Any]:
    redacted: Dict[Any, Any] = {}
    for key, value in mapping.items():
        if _is_sensitive(key):
            redacted[key] = _mask_value(value)
        elif isinstance(value, Mapping):
            redacted[key] = _redact_mapping(value)
        else:
            redacted[key] = value
    return redacted


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks shareable tokens, bearer headers and secrets.

    Nested mappings such as logged request headers are masked too.
    """
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = _mask_value(value)
        elif isinstance(value, Mapping):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def bind_connection(connection_id: str) -> str:
    """Start a log context for one WebSocket frame.

    Every log line emitted while the frame is processed carries the
    connection id and a fresh correlation id.
    """
    structlog.contextvars.bind_contextvars(connection_id=connection_id)
    return set_correlation_id()


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
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


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def mask_token(value: Optional[str]) -> Optional[str]:
    """Mask a bearer header or raw token down to its first 10 characters.

    Used where a credential has to appear in an outbound payload (error
    notifications) rather than a log line.
    """
    if not value:
        return None
    if value.lower().startswith("bearer "):
        actual = value[7:]
        if len(actual) > 10:
            return f"Bearer {actual[:10]}..."
        return "Bearer ***"
    if len(value) > 10:
        return f"{value[:10]}..."
    return "***"
