"""
Structured Logging with Structlog.

Every service logs snake_case events with keyword context. Credential
material never reaches a sink: the redaction processor runs before any
renderer, including on nested dicts such as request headers.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from creditgate.config import settings

_REDACTED = "[redacted]"

# Keys whose values must never reach a log sink
_SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "bearer_token",
        "authorization",
        "ciphertext",
        "client_secret",
        "secret",
    }
)

# Chatty at INFO: one line per outbound request, including the URL
_QUIET_LOGGERS = ("httpx", "httpcore")


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _REDACTED if str(k).lower() in _SECRET_KEYS else _scrub(v) for k, v in value.items()
        }
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential material with a placeholder, at any depth."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = _REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _scrub(value)
    return event_dict


def render_decimals(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Credit amounts render as plain decimal strings, not Decimal('1.25')."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag entries with service, version and accounting mode."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    event_dict.setdefault("accounting_mode", settings.accounting_mode)
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    JSON output looks like:
    {
        "event": "reservation_granted",
        "level": "debug",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "creditgate.services.balance_cache",
        "service": "credit-gateway",
        "version": "0.1.0",
        "accounting_mode": "remote",
        "request_id": "...",
        "user_id": "665f...",
        "required": "4.88"
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        render_decimals,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind context (request_id, user_id, ...) to every entry logged inside the block.

    Bindings live in contextvars, so each asyncio task sees only its own.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
