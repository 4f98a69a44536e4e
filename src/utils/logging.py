"""Structured process logging using structlog.

The persisted operation log (see vault.operation_store) is separate; operations mirror
their log entries here.
"""

import logging
import sys
from typing import Any, Optional

import structlog

NOISY_LIBRARIES = ("boto3", "botocore", "s3transfer", "urllib3", "aiohttp.access")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
    quiet_libraries: bool = True,
) -> structlog.BoundLogger:
    """Configure structured logging for the CLI commands.

    Args:
        log_level: Log level (DEBUG, INFO, WARN, ERROR, CRITICAL)
        log_format: 'json' for log aggregation, 'console' for humans
        correlation_id: Optional id bound to every event of this run
        quiet_libraries: Keep AWS and HTTP libraries at WARNING

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    if quiet_libraries:
        for name in NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
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

    logger = structlog.get_logger("vault")
    if correlation_id:
        logger = logger.bind(correlation_id=correlation_id)
    return logger


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger for a component, e.g. ``get_logger("archive_writer")``."""
    return structlog.get_logger(name) if name else structlog.get_logger()
