"""
Loguru setup shared by the API process and the sync scripts.

Console output is colored; file sinks under ``settings.LOG_DIR`` split the
stream by concern. Request and performance records are routed by the
``REQUEST``/``PERFORMANCE`` prefix the helpers below put on every message.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import Request
from loguru import logger

from app.config.settings import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
TAGGED_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"

# file name -> (level, rotation, retention, message prefix filter)
FILE_SINKS: Dict[str, Tuple[str, str, str, Optional[str]]] = {
    "app.log": ("DEBUG", "10 MB", "7 days", None),
    "errors.log": ("ERROR", "5 MB", "30 days", None),
    "requests.log": ("INFO", "20 MB", "14 days", "REQUEST"),
    "performance.log": ("INFO", "10 MB", "7 days", "PERFORMANCE"),
}


def _prefix_filter(prefix: str):
    return lambda record: record["message"].startswith(prefix)


def configure_logging(log_level: str = "INFO", logs_dir: str = "logs") -> None:
    logs_path = Path(logs_dir)
    logs_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stdout, format=CONSOLE_FORMAT, level=log_level, colorize=True, backtrace=True, diagnose=True)

    for file_name, (level, rotation, retention, prefix) in FILE_SINKS.items():
        options: Dict[str, Any] = dict(
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            encoding="utf-8",
        )
        if prefix:
            options.update(format=TAGGED_FORMAT, filter=_prefix_filter(prefix))
        else:
            options.update(format=FILE_FORMAT, backtrace=True, diagnose=True)
        logger.add(logs_path / file_name, **options)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def log_request_start(request: Request) -> None:
    logger.info(
        "REQUEST START: {method} {path}",
        method=request.method,
        path=request.url.path,
        query=str(request.query_params),
        client_ip=_client_ip(request),
    )


def log_request_end(request: Request, status_code: int, process_time: float) -> None:
    logger.info(
        "REQUEST END: {method} {path} - {status_code} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        process_time=process_time,
    )


def log_request_error(request: Request, error: Exception, process_time: float) -> None:
    logger.error(
        "REQUEST ERROR: {method} {path} - {error_type}: {error} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        error_type=type(error).__name__,
        error=str(error),
        process_time=process_time,
    )


def log_performance(operation: str, duration: float, **kwargs: Any) -> None:
    """Record how long ``operation`` took; extra kwargs land in the record's ``extra``."""
    logger.info(
        "PERFORMANCE: {operation} completed in {duration:.4f}s",
        operation=operation,
        duration=duration,
        **kwargs,
    )


configure_logging(settings.LOG_LEVEL, settings.LOG_DIR)

app_logger = logger
