"""
Structured Logging with Structlog.

Every entry carries the service name and version. API keys, webhook
secrets and signatures never reach the output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import Settings, settings

REDACTED = "[redacted]"

# Lower-cased event keys whose values are credentials
SENSITIVE_KEYS = frozenset(
    {"api_key", "x-api-key", "webhook_secret", "signature", "x-webhook-signature"}
)

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "sqlalchemy.engine", "alembic")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def build_processors(config: Settings) -> list[Processor]:
    """Processor chain ending in the renderer selected by log_format."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if config.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if config.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(config: Settings = settings) -> None:
    """Route structlog through stdlib logging on stdout."""
    level = getattr(logging, config.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def log_context(**context: Any) -> Any:
    """
    Bind context (request_id, user_id) to every entry logged inside the block.

    Usage:
        with log_context(request_id=request_id):
            logger.info("usage_consumed", user_id=user_id)
    """
    return structlog.contextvars.bound_contextvars(**context)
