"""Structured logging configuration for the SNTP client."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import structlog

# Library events are dropped unless the application installs handlers.
logging.getLogger("sntp_client").addHandler(logging.NullHandler())


def setup_logging(
    level: str = "INFO",
    component: Optional[str] = None,
    log_path: Optional[str | Path] = None,
) -> structlog.BoundLogger:
    """Configure structured logging and return a bound logger."""

    handlers: list[logging.Handler] = []
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger()
    if component:
        logger = logger.bind(component=component)
    return logger


def get_logger(name: str, server: Optional[str] = None) -> structlog.BoundLogger:
    # Wrap the stdlib logger so library events stay silent until the
    # application configures logging.
    logger = structlog.wrap_logger(logging.getLogger(name))
    if server:
        logger = logger.bind(server=server)
    return logger
