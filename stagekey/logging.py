from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for correlation ID (one per public operation)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current operation context."""
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


_EMAIL_RE = re.compile(r"([a-zA-Z0-9._-]+)(@[a-zA-Z0-9._-]+\.[a-zA-Z0-9._-]+)")
_PHONE_RE = re.compile(r"\+\d{8,15}\b|\b\d{10,11}\b")
_TOKEN_RE = re.compile(r"\b([map]k-[a-zA-Z0-9]{3})[a-zA-Z0-9]+")
_SECRET_KEYS = ("token", "secret", "password", "api_key", "authorization", "key")


def mask_pii(text: str) -> str:
    """Mask emails, phone numbers and raw access tokens inside free text."""
    if not text:
        return text
    masked = _TOKEN_RE.sub(lambda m: f"{m.group(1)}********", text)
    masked = _EMAIL_RE.sub(lambda m: f"{m.group(1)[:2]}***{m.group(2)}", masked)
    masked = _PHONE_RE.sub(lambda m: f"{m.group(0)[:3]}****{m.group(0)[-2:]}", masked)
    return masked


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact secrets and contact details from log entries."""
    for key in list(event_dict.keys()):
        if key in {"event", "timestamp", "level", "correlation_id"}:
            continue
        value = event_dict[key]
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            event_dict[key] = "********"
        elif isinstance(value, str):
            event_dict[key] = mask_pii(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [mask_pii(v) if isinstance(v, str) else v for v in value]
    return event_dict


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
        _redact_pii,
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


# Initialize logging on module import
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


def configure_logging(log_level: str, json_output: bool, development_mode: bool) -> None:
    """Re-apply logging configuration from loaded settings."""
    _configure_structlog(
        log_level=log_level,
        json_output=json_output,
        development_mode=development_mode,
    )
