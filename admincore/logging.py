from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# per-request context, bound by the HTTP middleware and the bearer dependency
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating a UUID when none is given."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def get_actor_id() -> Optional[str]:
    return actor_id_var.get()


def bind_actor(user_id: Optional[str]) -> None:
    """Attach the authenticated user to every log event of the current request."""
    actor_id_var.set(user_id)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    actor = actor_id_var.get()
    if actor:
        event_dict.setdefault("actor_id", actor)
    return event_dict


_SECRET_KEYS = ("password", "secret", "token", "authorization")
_JWT_SHAPE = re.compile(r"^[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]+$")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***"
    return f"{local[:2]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials outright; keep enough of emails and phones to correlate."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS) or _JWT_SHAPE.match(value):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif "phone" in lower_key and len(value) > 2:
            event_dict[key] = "***" + value[-2:]
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: emit one JSON object per line
        development_mode: colored console output, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_login_event(event: Any, logger: Optional[Any] = None) -> None:
    """Write one ``login_event`` entry per authentication attempt."""
    log = logger or get_logger("admincore.lifecycle")
    outcome = getattr(event.outcome, "value", event.outcome)
    log_fn = log.info if outcome == "success" else log.warning
    log_fn(
        "login_event",
        outcome=outcome,
        user_id=event.user_id,
        email=event.email,
        client_ip=event.client_ip,
        failed_attempts=event.failed_attempts,
        occurred_at=event.occurred_at.isoformat(),
    )


# storage and driver internals that must not reach API clients
_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
    r"(?i)violates\s+\w+(\s+\w+)?\s+constraint\s+\"?[\w.]+\"?",
    r"(?i)key\s+\([^)]*\)=\([^)]*\)",
    r"(?i)database\s+error",
    r"(?i)connection\s+.*\s+(failed|refused|timeout)",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
    r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
    r"(?i)traceback\s*\(most recent call last\)",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, constraint names, key values, paths and tracebacks from a message.

    Messages longer than 500 characters are truncated.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
