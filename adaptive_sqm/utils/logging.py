"""Structured logging: structlog events routed through the stdlib root logger.

Every event, ours or a library's, is rendered by the same processor chain,
so stdout and the rotating log file carry identical records.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog

LOGGER_NAMESPACE = "adaptive_sqm"
LOG_FILE_NAME = "adaptive_sqm.log"

# Chatty at INFO; only surfaced in debug mode
_QUIET_LIBRARIES = ("aiosqlite", "sqlalchemy.engine", "httpx", "httpcore")

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def _formatter(debug: bool) -> structlog.stdlib.ProcessorFormatter:
    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def setup_logging(
    debug: bool = False,
    log_dir: str = "logs",
    log_max_bytes: int = 10_000_000,
    log_backup_count: int = 5,
) -> str | None:
    """Configure structlog and the root logger.

    Returns the log file path, or None when the log directory is not
    writable and only stdout is used.
    """
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=_SHARED_PROCESSORS + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = _formatter(debug)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(log_level if debug else logging.WARNING)

    log_path = os.path.join(log_dir, LOG_FILE_NAME)
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
    except OSError:
        root_logger.warning("log file unavailable, logging to stdout only: %s", log_path)
        return None
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


def get_logger(name: str) -> structlog.BoundLogger:
    """Named logger under the package namespace, e.g. ``get_logger("engine.actuator")``."""
    if not name.startswith(LOGGER_NAMESPACE):
        name = f"{LOGGER_NAMESPACE}.{name}"
    return structlog.get_logger(name)
