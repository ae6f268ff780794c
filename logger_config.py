"""Logging setup shared by the API, MCP server, worker and launcher.

Every surface writes to its own rotating file under ``settings.LOG_DIR``
(agent.log, search.log, worker.log, ...) and echoes to the console. Sizes,
level and directory come from settings so deployments can tune them per
process through the environment.
"""

import logging
from logging.handlers import RotatingFileHandler
import os

from config import settings

_FORMAT = '[%(asctime)s] %(levelname)s - %(name)s - %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'botocore', 'boto3', 'httpx', 'mcp')


def log_dir() -> str:
    """Resolve and create the log directory."""
    path = settings.LOG_DIR
    if not os.path.isabs(path):
        path = os.path.join(os.path.dirname(os.path.abspath(__file__)), path)
    os.makedirs(path, exist_ok=True)
    return path


def setup_logger(name: str, log_file: str = 'service.log') -> logging.Logger:
    """Setup a logger writing to a rotating file and the console.

    Calling it twice for the same name returns the already configured logger,
    so modules can call it at import time.

    Args:
        name: Logger name (usually __name__)
        log_file: File name inside the log directory (e.g., 'agent.log')

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    file_handler = RotatingFileHandler(
        os.path.join(log_dir(), log_file),
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def quiet_third_party_loggers():
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


quiet_third_party_loggers()
