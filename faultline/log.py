"""
faultline Logging

structlog configuration shared by the test drivers.
"""

from __future__ import annotations

import logging
import sys
from typing import Union

import structlog

from faultline.config import LogLevel, LoggingConfig


def setup_logging(
    log_level: Union[str, LogLevel] = "INFO",
    log_format: str = "console",
) -> None:
    """Configure structured logging."""
    level = log_level.value if isinstance(log_level, LogLevel) else log_level.upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level, logging.INFO),
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from(config: LoggingConfig) -> None:
    """Apply a :class:`LoggingConfig` section."""
    setup_logging(config.level, config.format)
