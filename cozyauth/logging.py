from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, MutableMapping, Optional

import structlog

SERVICE_NAME = "cozyauth"

# Substrings of event keys whose string values are masked before rendering
_REDACTED_KEY_PARTS = frozenset(
    {"secret", "token", "api_key", "authorization", "email", "session_key"}
)


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Attach a request id to every log line emitted by the current context.

    Returns the id that was bound, generating one when the caller had none.
    """
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=rid)
    return rid


def _tag_service(_logger: Any, _method: str, event: MutableMapping[str, Any]):
    event.setdefault("service", SERVICE_NAME)
    return event


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_logger: Any, _method: str, event: MutableMapping[str, Any]):
    """Mask credentials and addresses so log lines can be shipped off-host.

    Two leading and two trailing characters survive, enough to match a line
    against a support ticket.
    """
    for key, value in list(event.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(part in lowered for part in _REDACTED_KEY_PARTS):
            event[key] = _mask(value)
    return event


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline; JSON lines unless ``json_output`` is off."""
    tail: list[Any]
    if json_output:
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _tag_service,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *tail,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach an API client inside an error message
_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)(redis|postgres(?:ql)?)://\S+",
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+",
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, credentials, SQL and paths from ``error``."""
    if not isinstance(error, str) or not error:
        return "An error occurred"
    for fragment in _LEAKY_FRAGMENTS:
        error = fragment.sub(replacement, error)
    if len(error) > _MAX_CLIENT_MESSAGE:
        error = error[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return error
