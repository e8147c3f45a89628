"""Process-wide logging setup for the bookings service and its payout runs.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides where those records end up: the console and ``<logs_dir>/app.log``.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from config.settings import CONFIG, AppConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "app.log"
LOG_MAX_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def _handlers(config: AppConfig, level: int) -> list[logging.Handler]:
    log_file = config.logs_dir / LOG_FILE_NAME
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = [
        logging.StreamHandler(),
        RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def configure_logging(config: AppConfig = CONFIG, level: int = logging.INFO) -> logging.Logger:
    """Route all log records to the console and a rotating file; returns the root logger.

    Safe to call repeatedly: previous handlers are closed and replaced, never stacked.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    for handler in _handlers(config, level):
        root_logger.addHandler(handler)
    return root_logger
