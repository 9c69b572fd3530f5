"""
Logging utilities.

WHAT: Centralized logging configuration for the API process
WHY: Same log format for REST handlers, stores and the socket gateway
HOW: Root logger with console + file handlers, noisy libraries turned down
"""

import logging
import sys
from pathlib import Path

from ..core.config import settings

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that flood INFO with per-request lines
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "sse_starlette", "websockets")


def setup_logging(log_file: str | None = None):
    """
    Configure application logging.

    Safe to call more than once (tests, reloads): existing root handlers are
    replaced rather than stacked.

    Args:
        log_file: Override for settings.LOG_FILE
    """
    log_path = Path(log_file or settings.LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    quiet_level = logging.INFO if settings.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    root_logger.info(f"Logging initialized (level={settings.LOG_LEVEL}, file={log_path})")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module (typically called with __name__)."""
    return logging.getLogger(name)
