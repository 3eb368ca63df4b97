"""
Structured Logging with Structlog.

Provides JSON-formatted logs with request context. Model API keys and bearer
tokens travel through chat requests and settings updates; the redaction
processor keeps them out of every log line, however deeply they are nested.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from chainchat.config import settings


REDACTED = "[REDACTED]"

# Compared case-insensitively, with "-" and "_" ignored (apiKey, api_key, Api-Key)
SECRET_FIELDS = frozenset(
    {
        "apikey",
        "llmapikey",
        "builtinllmapikey",
        "authorization",
        "token",
        "accesstoken",
        "authjwtsecret",
        "password",
    }
)


def _is_secret_field(name: str) -> bool:
    return name.replace("_", "").replace("-", "").lower() in SECRET_FIELDS


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and _is_secret_field(k) and v else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return type(value)(_redact(v) for v in value)
    if isinstance(value, str) and value.startswith("Bearer "):
        return "Bearer " + REDACTED
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask API keys, tokens and secrets in log entries and any nested payloads."""
    return _redact(event_dict)  # type: ignore[no-any-return]


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "usage_recorded",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "chainchat.services.ledger",
        "service": "chainchat-api",
        "version": "0.1.0",
        "chain_id": "4667b205c6838ef70ff7988f6e8257e8...",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("allowance_checked", chain_id=chain_id, allowed=True)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(chain_id="...", account_name="alice"):
            logger.info("chat_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = {k: v for k, v in kwargs.items() if v is not None}

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
