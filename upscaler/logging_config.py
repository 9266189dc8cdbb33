"""
Upscaler Logging Configuration

Every log line is an event name plus keyword context, written to stdout as
JSON (or plain text when UPSCALER_LOG_FORMAT=text).
"""
import logging
import sys
import json
import traceback
from datetime import datetime, timezone
from typing import Optional
from functools import wraps
import time
import os

LOG_LEVEL = os.environ.get("UPSCALER_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("UPSCALER_LOG_FORMAT", "json")


class StructuredLogger:
    """Wraps a stdlib logger so call sites pass context as keywords"""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter() if LOG_FORMAT == "json" else TextFormatter())
        self.logger.handlers = [handler]

    def _log(self, level: int, event: str, **context):
        self.logger.log(level, event, extra={"context": context, "logger_name": self.name})

    def debug(self, event: str, **context):
        self._log(logging.DEBUG, event, **context)

    def info(self, event: str, **context):
        self._log(logging.INFO, event, **context)

    def warning(self, event: str, **context):
        self._log(logging.WARNING, event, **context)

    def error(self, event: str, error: Optional[Exception] = None, **context):
        if error is not None:
            context["error_type"] = type(error).__name__
            context["error_message"] = str(error)
            context["traceback"] = traceback.format_exc()
        self._log(logging.ERROR, event, **context)


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": getattr(record, "logger_name", record.name),
            "event": record.getMessage(),
        }
        log_data.update(getattr(record, "context", {}))
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        line = f"[{timestamp}] [{record.levelname}] {record.getMessage()}"
        context = getattr(record, "context", {})
        pairs = " ".join(f"{k}={v}" for k, v in context.items() if k != "traceback")
        return f"{line} ({pairs})" if pairs else line


def timed(logger: StructuredLogger):
    """Log how long a provider call took, and whether it raised"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "call_failed",
                    error=e,
                    function=func.__name__,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise
            logger.debug(
                "call_completed",
                function=func.__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return result

        return wrapper

    return decorator


api_logger = StructuredLogger("upscaler.api")
worker_logger = StructuredLogger("upscaler.worker")
billing_logger = StructuredLogger("upscaler.billing")


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(f"upscaler.{name}")
