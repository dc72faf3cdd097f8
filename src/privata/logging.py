"""Structured logging setup."""

import logging
import sys

import structlog

from privata.config import Settings, get_settings


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
    settings: Settings | None = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog over the standard library logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to settings.
        log_format: Output format (json, console). Defaults to settings.
        settings: Settings to read defaults from.

    Returns:
        Configured logger instance.
    """
    settings = settings or get_settings()
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level),
        stream=sys.stdout,
    )

    return structlog.get_logger("privata")
