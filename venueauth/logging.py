"""structlog setup shared by the API, services and storage.

Every event passes through the same processor chain: request context,
level, timestamp, correlation id, then redaction. Redaction runs before any
renderer so secrets never reach stdout or a log shipper.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substring match on the key: partially masked
_PII_KEYS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "email", "phone", "ssn"}
)

# Exact keys whose values are short enough that a partial mask gives them away
_ONE_TIME_CODE_KEYS = frozenset({"code", "verification_code", "reset_code", "otp"})

# Free-text exception messages logged under these keys are scrubbed
_ERROR_TEXT_KEYS = frozenset({"error"})

_SENSITIVE_ERROR_PATTERNS = [
    # credentials embedded in postgres / redis URLs
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://[^:/\s@]*:)[^@\s]+@"), r"\1***@"),
    # libpq keyword DSNs
    (re.compile(r"(?i)\bpassword\s*=\s*\S+"), "password=***"),
    # SQL echoed back by the driver
    (
        re.compile(
            r"(?i)\b(select\s+.+?\s+from|insert\s+into|update\s+\w+\s+set|delete\s+from)\b.{0,80}"
        ),
        "[sql]",
    ),
    (re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/\S+"), "[path]"),
]

_MAX_ERROR_LENGTH = 500


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def sanitize_error_message(error: Any) -> str:
    """Strip connection secrets, SQL and filesystem paths from exception text.

    Driver and client exceptions from psycopg and redis quote the DSN or the
    failing statement; those messages are logged, never returned to clients,
    but log sinks are still shared with people who should not see them.
    """
    if not error:
        return "An error occurred"
    result = str(error)
    for pattern, replacement in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result


def _mask(value: str) -> str:
    # Keep first/last 2 chars for debugging
    return value[:2] + "***" + value[-2:] if len(value) > 4 else value


def _redact_mapping(data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
    redacted: Dict[str, Any] = {}
    for key, value in data.items():
        lower_key = str(key).lower()
        if lower_key in _ONE_TIME_CODE_KEYS and value is not None:
            redacted[key] = "***"
        elif isinstance(value, str) and any(pii in lower_key for pii in _PII_KEYS):
            redacted[key] = _mask(value)
        elif isinstance(value, dict) and depth < 5:
            # audit details and old/new snapshots
            redacted[key] = _redact_mapping(value, depth + 1)
        else:
            redacted[key] = value
    return redacted


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, contact details and one-time codes before they reach a sink."""
    return _redact_mapping(event_dict)


def _sanitize_errors(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in _ERROR_TEXT_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = sanitize_error_message(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

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
        _sanitize_errors,
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


def bind_request_context(**values: Any) -> None:
    """Attach identifiers (user_id, venue_id, sub_user_id) to every later log line of this request."""
    structlog.contextvars.bind_contextvars(
        **{k: v for k, v in values.items() if v is not None}
    )


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
