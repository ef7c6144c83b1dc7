"""Structured logging configuration for the AMM volume bot."""

from __future__ import annotations

import json
import logging
import re
import sys
from enum import Enum
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class TradeEvent(str, Enum):
    """Event tags attached to trade-related log records via ``extra``."""

    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    PRICE_CHECK = "price_check"
    PRICE_ERROR = "price_error"
    SLIPPAGE_WARNING = "slippage_warning"
    GAS_WARNING = "gas_warning"
    RETRY_ATTEMPT = "retry_attempt"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class SanitizingFormatter(logging.Formatter):
    """Formatter that redacts secrets from log messages."""

    SENSITIVE_PATTERNS = [
        "private_key",
        "password",
        "token",
        "secret",
        "authorization",
    ]

    def format(self, record: logging.LogRecord) -> str:
        record_copy = logging.makeLogRecord(record.__dict__)

        message = record_copy.getMessage()
        for pattern in self.SENSITIVE_PATTERNS:
            if pattern in message.lower():
                message = re.sub(
                    rf"{pattern}['\"]?\s*[:=]\s*['\"]?[\w\-:]+",
                    f"{pattern}=[REDACTED]",
                    message,
                    flags=re.IGNORECASE,
                )
        record_copy.msg = message
        record_copy.args = ()

        return super().format(record_copy)


def setup_logging(
    level: str = "INFO",
    *,
    structured: bool = False,
    sanitize: bool = True,
    log_file: str | None = None,
    rotate_days: int = 14,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Use JSON structured logging
        sanitize: Redact secrets from human-readable output
        log_file: Optional file path; rotated at midnight
        rotate_days: Number of rotated log files to keep
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    elif sanitize:
        formatter = SanitizingFormatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            # Files always get JSON lines so they can be grepped by event.
            file_handler = TimedRotatingFileHandler(
                log_path, when="midnight", backupCount=rotate_days, encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(file_handler)
        except OSError as exc:
            root_logger.warning(
                "Failed to set up file logging to %s: %s", log_file, exc
            )

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
