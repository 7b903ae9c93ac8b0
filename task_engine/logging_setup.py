import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from .config import get_settings

logger = logging.getLogger("task_engine")

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
LOG_FILE = 'task_engine.log'
LOG_BACKUP_DAYS = 14

file_handler = None


def _release_file_handler() -> None:
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Route engine logs to stderr and, when a log dir is configured, a daily file.

    Safe to call repeatedly: a CLI run or test that re-initializes replaces the
    handlers instead of stacking them.
    """
    global file_handler
    cfg = get_settings()
    level = (level or cfg.LOG_LEVEL or "INFO").upper()
    log_dir = cfg.LOG_DIR if log_dir is None else log_dir

    logger.setLevel(getattr(logging, level, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)
    _release_file_handler()
    handlers = []
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        # task_engine.log rolls at midnight; scheduler/executor history older than LOG_BACKUP_DAYS is dropped
        file_handler = TimedRotatingFileHandler(
            os.path.join(log_dir, LOG_FILE), when="midnight", interval=1, backupCount=LOG_BACKUP_DAYS
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    logger.handlers = handlers
    logger.info("[BOOT] task engine logging ready (level=%s, dir=%s)", level, log_dir or "-")


def close_logging() -> None:
    _release_file_handler()
    logger.handlers = []
