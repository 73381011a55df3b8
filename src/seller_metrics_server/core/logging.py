"""structlog setup for the server process."""

import logging
import sys
from typing import TextIO

import structlog

from seller_metrics_server.core.config import settings


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Route structlog through stdlib logging and render JSON lines.

    Sync passes bind user_id, trigger and component on their loggers, so
    every line from a pass can be filtered per seller downstream.
    The CLI passes stderr so its JSON output on stdout stays parseable.
    """
    log_level = getattr(logging, (level or settings.log_level).upper())
    logging.basicConfig(format="%(message)s", stream=stream or sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
