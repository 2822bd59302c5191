"""
Structured logging module using Loguru
"""

from loguru import logger
from contextvars import ContextVar
from typing import Optional
import json
import sys
from functools import wraps
import asyncio
import time

# Context variables for pipeline tracking
run_id_var: ContextVar[Optional[int]] = ContextVar("run_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


class StructuredLogger:
    """Wrapper for structured logging with context"""

    @staticmethod
    def bind(**kwargs) -> logger:
        """Bind context to logger"""
        context = {
            "run_id": run_id_var.get(),
            "job_id": job_id_var.get(),
            "user_id": user_id_var.get(),
            **kwargs,
        }
        # Remove None values
        context = {k: v for k, v in context.items() if v is not None}
        return logger.bind(**context)

    @staticmethod
    def info(message: str, **kwargs):
        """Log info with context"""
        StructuredLogger.bind(**kwargs).info(message)

    @staticmethod
    def error(message: str, **kwargs):
        """Log error with context"""
        StructuredLogger.bind(**kwargs).error(message)

    @staticmethod
    def warning(message: str, **kwargs):
        """Log warning with context"""
        StructuredLogger.bind(**kwargs).warning(message)

    @staticmethod
    def debug(message: str, **kwargs):
        """Log debug with context"""
        StructuredLogger.bind(**kwargs).debug(message)

    @staticmethod
    def exception(message: str, **kwargs):
        """Log exception with context"""
        StructuredLogger.bind(**kwargs).exception(message)


def log_execution_time(func):
    """Decorator to log function execution time"""

    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        start = time.time()
        try:
            result = await func(*args, **kwargs)
            duration = time.time() - start
            StructuredLogger.debug(
                "Function executed successfully",
                function=func.__name__,
                duration=duration,
                status="success",
            )
            return result
        except Exception as e:
            duration = time.time() - start
            StructuredLogger.error(
                "Function failed",
                function=func.__name__,
                duration=duration,
                status="error",
                error=str(e),
            )
            raise

    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        start = time.time()
        try:
            result = func(*args, **kwargs)
            duration = time.time() - start
            StructuredLogger.debug(
                "Function executed successfully",
                function=func.__name__,
                duration=duration,
                status="success",
            )
            return result
        except Exception as e:
            duration = time.time() - start
            StructuredLogger.error(
                "Function failed",
                function=func.__name__,
                duration=duration,
                status="error",
                error=str(e),
            )
            raise

    if asyncio.iscoroutinefunction(func):
        return async_wrapper
    else:
        return sync_wrapper


def log_provider_call(
    provider: str,
    query: str,
    duration: Optional[float] = None,
    result_count: Optional[int] = None,
    error_code: Optional[str] = None,
    **kwargs,
):
    """Log one provider search call"""
    log_data = {"provider": provider, "query": query, "type": "provider_call"}

    if duration is not None:
        log_data["duration"] = round(duration, 3)

    if result_count is not None:
        log_data["result_count"] = result_count

    log_data.update(kwargs)

    if error_code:
        log_data["error_code"] = error_code
        StructuredLogger.error("Provider search failed", **log_data)
    else:
        StructuredLogger.info("Provider search completed", **log_data)


# JSON formatter for structured logs
def json_formatter(record):
    """Format log record as JSON"""
    log_format = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    # Add extra fields
    if record.get("extra"):
        log_format.update(record["extra"])

    # Add exception info if present
    if record.get("exception"):
        log_format["exception"] = str(record["exception"])

    # loguru treats the returned string as a format template
    return json.dumps(log_format, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def setup_json_logging(level: str = "INFO"):
    """Setup JSON formatted logging (useful for production)"""
    logger.remove()
    logger.add(sys.stdout, format=json_formatter, level=level, serialize=False)


# Export main logger and structured logger
structured_logger = StructuredLogger()
__all__ = [
    "logger",
    "structured_logger",
    "log_execution_time",
    "log_provider_call",
    "setup_json_logging",
    "run_id_var",
    "job_id_var",
    "user_id_var",
]
