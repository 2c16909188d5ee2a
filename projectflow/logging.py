from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

EventDict = Dict[str, Any]

_TRUTHY = {"1", "true", "yes", "on"}

# Request-scoped id; set by the HTTP middleware and echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Event keys containing any of these never reach the sink in clear.
# "code" is matched exactly so code_challenge_method and error_code stay readable.
_MASKED_KEY_PARTS = ("secret", "token", "verifier", "authorization", "cookie", "email")
_MASKED_EXACT_KEYS = {"code", "refresh", "access"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def mask_value(value: str) -> str:
    """Keep two characters at each end of a bearer secret, enough to correlate."""
    if len(value) <= 8:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _is_masked_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _MASKED_EXACT_KEYS:
        return True
    if lowered == "token_kind":
        return False
    return any(part in lowered for part in _MASKED_KEY_PARTS)


def _inject_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    correlation_id = get_correlation_id()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def _mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask access tokens, refresh tokens, authorization codes and PKCE verifiers."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and _is_masked_key(key):
            event_dict[key] = mask_value(value)
    return event_dict


def build_processors(*, json_output: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_correlation_id,
        _mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog from arguments, falling back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.

    Development mode always renders to the console.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    structlog.configure(
        processors=build_processors(json_output=json_output and not development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client through an error message
_LEAKY_MESSAGE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(psycopg|postgres|redis)\S*\s*error.*",
        r"(?i)connection\s+\S+.*\b(failed|refused|timed out|timeout)\b",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/\S+",
        r"(?i)(secret|token|verifier|code|password)\s*[:=]\s*\S+",
    )
]
_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(message: Any, *, replacement: str = "[redacted]") -> str:
    """Return ``message`` fit for a client: no SQL, paths, DSNs or secrets."""
    if not isinstance(message, str) or not message:
        return "request failed"
    for pattern in _LEAKY_MESSAGE_PATTERNS:
        message = pattern.sub(replacement, message)
    if len(message) > _MAX_CLIENT_MESSAGE:
        message = message[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return message
