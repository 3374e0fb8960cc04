"""
Logging configuration for the formation engine.

Structured JSON logs in production, readable console output everywhere else.
Context bound with structlog.contextvars (trace_id, session_id) is merged into
every record, including records emitted by uvicorn and httpx.
"""

import logging
import os
from typing import Any, Dict, Optional

import structlog

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENVIRONMENT_LOG_LEVELS = {
    "production": "INFO",
    "staging": "INFO",
    "development": "DEBUG",
    "test": "WARNING",
}

# Keys whose values must never reach a log line
SENSITIVE_KEYS = frozenset({"tax_id", "instrument", "api_key", "encryption_key", "authorization"})

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


class SessionContextFilter(logging.Filter):
    """Copy trace_id and session_id from the structlog context onto stdlib records."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = structlog.contextvars.get_contextvars()
        record.correlation_id = bound.get("trace_id", "")
        record.session_id = bound.get("session_id", "")
        return True


def redact_sensitive(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = "[REDACTED]"
    return event_dict


def _renderer(env: str):
    if env == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def get_log_level(environment: Optional[str] = None, log_level: Optional[str] = None) -> str:
    """
    Explicit level if valid, else LOG_LEVEL, else the environment default.

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    env = environment or os.getenv("ENVIRONMENT", "development")
    level = (log_level or os.getenv("LOG_LEVEL", "")).upper()
    if level in LOG_LEVELS:
        return level
    return ENVIRONMENT_LOG_LEVELS.get(env, "INFO")


def configure_logging(environment: Optional[str] = None, log_level: Optional[str] = None) -> None:
    """
    Route structlog through the stdlib ProcessorFormatter and install one root handler.

    Call once at startup (API lifespan or CLI entry point).
    """
    env = environment or os.getenv("ENVIRONMENT", "development")

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(env),
            foreign_pre_chain=shared_processors,
        )
    )
    handler.addFilter(SessionContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(get_log_level(env, log_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
