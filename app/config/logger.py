"""
Logger configuration for the Knowledge Hub backend using Loguru.

This module provides the logging setup used across ingestion and retrieval:
- Structured logging with timestamps using Loguru
- File and console handlers with rotation
- Request/response logging middleware helpers
- Redaction of credentials before any sink sees a record
"""

import re
import sys
from datetime import datetime
from pathlib import Path

from fastapi import Request
from loguru import logger

from app.config.settings import settings

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(
    r"token|secret|password|credential|authorization|cookie|api[_-]?key",
    re.IGNORECASE,
)

SENSITIVE_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\bya29\.[A-Za-z0-9_\-.]+"),
    re.compile(r"((?:access|refresh)_token[\"']?\s*[:=]\s*[\"']?)[^\s\"',&]+", re.IGNORECASE),
]


def redact_text(text: str) -> str:
    """Mask bearer tokens and API keys embedded in free text."""
    for pattern in SENSITIVE_VALUE_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


def redact_value(key: str, value):
    if SENSITIVE_KEY_PATTERN.search(key):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(key, v) for v in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def _redact_record(record) -> None:
    record["message"] = redact_text(record["message"])
    for key in list(record["extra"].keys()):
        record["extra"][key] = redact_value(key, record["extra"][key])


class LoguruConfig:
    """Loguru configuration class for the application."""

    def __init__(self, app_name: str = "knowledge-hub"):
        self.app_name = app_name
        self.logs_dir = Path("logs")
        self.logs_dir.mkdir(exist_ok=True)

    def setup_logger(self, log_level: str = "INFO") -> None:
        """Configure Loguru logger for the application."""

        logger.remove()
        logger.configure(patcher=_redact_record)

        logger.add(
            sys.stdout,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

        logger.add(
            self.logs_dir / "app.log",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} | {extra}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            encoding="utf-8",
            backtrace=True,
            diagnose=False,
        )

        logger.add(
            self.logs_dir / "errors.log",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} | {extra}",
            level="ERROR",
            rotation="5 MB",
            retention="30 days",
            compression="zip",
            encoding="utf-8",
            backtrace=True,
            diagnose=False,
        )

        logger.add(
            self.logs_dir / "requests.log",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
            level="INFO",
            rotation="20 MB",
            retention="14 days",
            compression="zip",
            encoding="utf-8",
            filter=lambda record: "REQUEST" in record["message"],
        )

        logger.add(
            self.logs_dir / "performance.log",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message} | {extra}",
            level="INFO",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            encoding="utf-8",
            filter=lambda record: "PERFORMANCE" in record["message"],
        )


def log_request_start(request: Request, request_id: str) -> None:
    """Log the start of a request using Loguru."""
    logger.bind(
        request_id=request_id,
        query_params=str(request.query_params),
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        timestamp=datetime.now().isoformat(),
    ).info(f"REQUEST START: {request.method} {request.url.path}")


def log_request_end(request: Request, request_id: str, status_code: int, process_time: float) -> None:
    """Log the completion of a request using Loguru."""
    logger.bind(
        request_id=request_id,
        client_ip=request.client.host if request.client else None,
    ).info(f"REQUEST END: {request.method} {request.url.path} - {status_code} ({process_time:.4f}s)")


def log_request_error(request: Request, request_id: str, error: Exception, process_time: float) -> None:
    """Log a request error using Loguru."""
    logger.bind(
        request_id=request_id,
        error_type=type(error).__name__,
        client_ip=request.client.host if request.client else None,
    ).error(f"REQUEST ERROR: {request.method} {request.url.path} - {error} ({process_time:.4f}s)")


def log_performance(operation: str, duration: float, **kwargs) -> None:
    """Log performance metrics using Loguru."""
    logger.bind(**kwargs).info(f"PERFORMANCE: {operation} completed in {duration:.4f}s")


loguru_config = LoguruConfig()
loguru_config.setup_logger(settings.LOG_LEVEL)

app_logger = logger
