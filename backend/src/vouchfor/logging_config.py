"""Structured logging for the API, the worker and the CLI."""

import logging
import sys

import structlog

from vouchfor.settings import settings

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("stripe", "httpx", "slowapi")


def _add_service(_, __, event_dict: dict) -> dict:
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.env)
    return event_dict


def configure_logging() -> None:
    """Configure structlog and route stdlib logging to the same stream.

    ``log_format=json`` emits one JSON object per line for log shipping;
    ``console`` renders key/value pairs for local development.
    """
    level = logging.getLevelName(settings.log_level.upper())

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_service,
    ]
    if settings.log_format == "json":
        processors = shared + [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared + [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
