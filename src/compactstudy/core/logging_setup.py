import logging
import sys
from typing import Optional

import structlog


def configure_logging(log_level: str = "INFO", json_logs: bool = True):
    """
    Configure structured logging for pipeline runs.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_logs:
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Module loggers use the stdlib; send them to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    logging.captureWarnings(True)


def configure_from_settings(settings=None):
    """Configure logging from the environment-driven settings object."""
    if settings is None:
        from ..config import settings as default_settings

        settings = default_settings
    configure_logging(settings.log_level, json_logs=settings.log_format == "json")


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)
