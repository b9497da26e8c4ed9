import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

APP_LOGGER_NAME = "mysql_sync"

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: Optional[str] = None):
    """Configure the logging for the application."""
    log_level = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    # Get the root logger
    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    if logger.hasHandlers():
        logger.handlers.clear()

    # Console Handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    logger.addHandler(console_handler)

    # Set the logger for the application
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(log_level)

    logging.info(f"Logging configured with level {log_level}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


@contextmanager
def run_log(log_path: str) -> Iterator[logging.FileHandler]:
    """
    Mirror every application log record into ``log_path`` for the duration
    of one sync run. The file is created even when the run fails immediately.
    """
    os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if app_logger.level == logging.NOTSET:
        app_logger.setLevel(logging.INFO)

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    app_logger.addHandler(handler)
    try:
        yield handler
    finally:
        app_logger.removeHandler(handler)
        handler.close()
