"""
Loguru setup for the Knowledge Base Backend.

Console output plus rotating files under ``LOG_DIR``:
- app.log: everything at DEBUG and above
- errors.log: ERROR and above
- requests.log / sync.log / performance.log: lines tagged with a
  ``REQUEST``, ``SYNC`` or ``PERFORMANCE`` prefix
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

from fastapi import Request
from loguru import logger

from app.config.settings import settings

DETAILED_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
SHORT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# (file name, level, rotation, retention, message tag or None)
FILE_SINKS = [
    ("app.log", "DEBUG", "10 MB", "7 days", None),
    ("errors.log", "ERROR", "5 MB", "30 days", None),
    ("requests.log", "INFO", "20 MB", "14 days", "REQUEST"),
    ("sync.log", "INFO", "20 MB", "30 days", "SYNC"),
    ("performance.log", "INFO", "10 MB", "7 days", "PERFORMANCE"),
]


def _tagged(tag: str):
    return lambda record: record["message"].startswith(tag)


class LoguruConfig:
    """Loguru configuration class for the application."""

    def __init__(self, logs_dir: str = settings.LOG_DIR):
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def setup_logger(self, log_level: str = settings.LOG_LEVEL) -> None:
        logger.remove()
        logger.add(
            sys.stdout,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

        for file_name, level, rotation, retention, tag in FILE_SINKS:
            logger.add(
                self.logs_dir / file_name,
                format=SHORT_FORMAT if tag else DETAILED_FORMAT,
                level=level,
                rotation=rotation,
                retention=retention,
                compression="zip",
                encoding="utf-8",
                filter=_tagged(tag) if tag else None,
                backtrace=tag is None,
                diagnose=tag is None,
            )


def _client_ip(request: Request):
    return request.client.host if request.client else None


def log_request_start(request: Request) -> None:
    logger.info(
        "REQUEST START: {method} {path}",
        method=request.method,
        path=request.url.path,
        query_params=str(request.query_params),
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def log_request_end(request: Request, status_code: int, process_time: float) -> None:
    logger.info(
        "REQUEST END: {method} {path} - {status_code} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        process_time=round(process_time, 4),
        client_ip=_client_ip(request),
    )


def log_request_error(request: Request, error: Exception, process_time: float) -> None:
    logger.error(
        "REQUEST ERROR: {method} {path} - {error} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        error=str(error),
        process_time=round(process_time, 4),
        error_type=type(error).__name__,
        client_ip=_client_ip(request),
    )


def log_performance(operation: str, duration: float, **kwargs) -> None:
    """Log how long an operation took; extra kwargs are appended as key=value pairs."""
    details = " ".join(f"{key}={value}" for key, value in kwargs.items())
    logger.info(
        "PERFORMANCE: {operation} completed in {duration:.4f}s {details}",
        operation=operation,
        duration=duration,
        details=details,
        finished_at=datetime.now(timezone.utc).isoformat(),
    )


loguru_config = LoguruConfig()
loguru_config.setup_logger()

app_logger = logger
