"""
Logging configuration: loguru sink setup plus interception of stdlib logging
(uvicorn, sqlalchemy, httpx) so that every record goes through one pipeline.
"""

import logging
import sys
from typing import Any

from loguru import logger as loguru_logger

from .config import settings


class InterceptHandler(logging.Handler):
    """Redirect standard logging records to loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging() -> None:
    loguru_logger.remove()
    if settings.log_json:
        loguru_logger.add(sys.stdout, level=settings.log_level, serialize=True)
    else:
        loguru_logger.add(
            sys.stdout,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> - <level>{message}</level>",
            level=settings.log_level,
            colorize=True,
        )
    loguru_logger.configure(extra={"name": "dataroom"})

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn").handlers = [InterceptHandler()]
    logging.getLogger("uvicorn.access").handlers = [InterceptHandler()]
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> Any:
    return loguru_logger.bind(name=name)
