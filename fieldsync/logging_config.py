"""
logging_config.py — Centralized Logging Configuration for fieldsync

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so httpx, SQLAlchemy and Alembic loggers route through
Loguru with the same format.

Business Rules:
- All logs go through Loguru (no direct print() in library code)
- JSON lines when app_url points at a real host, colorized text locally
- Level and app_url come from settings; explicit arguments win

Called by: fieldsync/cli.py, fieldsync/main.py (on startup)
Depends on: config.settings (log_level, app_url)
"""

import logging
import sys
from urllib.parse import urlparse

from loguru import logger

from .config import settings

LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")

DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "{message}"
)


def is_production(app_url: str) -> bool:
    host = urlparse(app_url or "").hostname
    return bool(host) and host not in LOCAL_HOSTS


def setup_logging(level: str | None = None, app_url: str | None = None) -> None:
    """Replace Loguru's sinks and route stdlib logging into them.

    Safe to call more than once; each call starts from a clean handler list.
    """
    logger.remove()

    level = (level or settings.log_level).upper()
    production = is_production(settings.app_url if app_url is None else app_url)

    if production:
        # Scheduler / container runtime captures stdout
        logger.add(sys.stdout, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=DEV_FORMAT, colorize=True)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging configured (level={}, json={})", level, production)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals so Loguru reports the caller
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())
