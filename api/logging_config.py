"""
Logging configuration for the Listing Sync Engine.
Colored console output plus rotating log files.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Log directory
LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).parent.parent / "logs"))

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ROOT_LOGGER_NAME = "listing_sync"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Work on a copy so file handlers sharing the record see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(name: Optional[str] = None, log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Setup and return a configured logger.

    Handlers are attached to the root logger by default so that every
    ``logging.getLogger(__name__)`` in the project is captured.

    Args:
        name: Logger name (default: root logger)
        log_dir: Directory for log files (default: LOG_DIR)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_format = ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    directory = Path(log_dir or LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    file_stem = name or ROOT_LOGGER_NAME

    # File handler with rotation
    file_handler = RotatingFileHandler(
        directory / f"{file_stem}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    # Error file handler (errors and above)
    error_handler = RotatingFileHandler(
        directory / f"{file_stem}_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)
    logger.addHandler(error_handler)

    # Quiet third-party loggers
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return logger


logger = logging.getLogger(ROOT_LOGGER_NAME)


def log_request(method: str, path: str, status_code: int = None, duration_ms: float = None):
    """Log an HTTP request."""
    logger.info(f"HTTP {method} {path} -> {status_code} ({duration_ms:.2f}ms)" if duration_ms else f"HTTP {method} {path}")


def log_job_summary(job: str, **counts):
    """Log the counters of a finished batch job on one line."""
    summary = ", ".join(f"{key}={value}" for key, value in counts.items())
    logger.info(f"Job {job} finished: {summary}")
