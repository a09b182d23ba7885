"""Structured logging utilities with correlation IDs, performance timing, and sensitive data handling."""

import hashlib
import inspect
import logging
import re
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional

from saleingest.utils.logging_config import LoggingConfig, get_logger


_correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return f"req_{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation ID in context."""
    _correlation_id_var.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: Optional[str] = None):
    """Context manager for correlation ID propagation."""
    if correlation_id is None:
        correlation_id = generate_correlation_id()

    old_id = get_correlation_id()
    set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        set_correlation_id(old_id)


def mask_sensitive_data(text: str) -> str:
    """Mask sensitive data in text (emails, tokens, secrets)."""
    if not text or not LoggingConfig.LOG_MASK_SENSITIVE:
        return text

    text = re.sub(
        r'[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}',
        '[REDACTED_EMAIL]',
        text,
        flags=re.IGNORECASE
    )

    text = re.sub(
        r'(?i)(api[_-]?key|token|secret|password|auth)[\s:=]+([A-Za-z0-9_-]{8,})',
        r'\1=[REDACTED]',
        text
    )

    # Supabase service keys are JWTs
    text = re.sub(
        r'eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+',
        '[REDACTED_JWT]',
        text
    )

    return text


def mask_identifier(value: Optional[str]) -> Optional[str]:
    """Hash a caller identifier (IP address, user id) for privacy."""
    if not LoggingConfig.LOG_MASK_SENSITIVE or not value:
        return value

    hashed = hashlib.sha256(value.encode()).hexdigest()[:8]
    if len(value) > 12:
        return f"{value[:4]}...{hashed}"
    return f"anon_{hashed}"


def sanitize_text(text: Optional[str], max_length: int = 200) -> Optional[str]:
    """Truncate and mask free text (titles, upstream errors) for logging."""
    if not text:
        return None

    if len(text) > max_length:
        text = text[:max_length] + "..."

    return mask_sensitive_data(text)


class StructuredLogger:
    """Logger wrapper that accepts structured fields as keyword arguments."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _get_extra(self, **kwargs: Any) -> Dict[str, Any]:
        extra = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            extra["correlation_id"] = correlation_id

        extra.update(kwargs)
        return extra

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._get_extra(**kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._get_extra(**kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._get_extra(**kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, extra=self._get_extra(**kwargs), exc_info=exc_info)

    def exception(self, message: str, **kwargs: Any) -> None:
        self.logger.exception(message, extra=self._get_extra(**kwargs))


def get_structured_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(get_logger(name))


@contextmanager
def log_timing(operation_name: str, logger: Optional[StructuredLogger] = None, **context: Any):
    """Context manager for timing operations."""
    if logger is None:
        logger = get_structured_logger(__name__)

    start_time = time.perf_counter()
    logger.debug(f"Starting {operation_name}", operation=operation_name, **context)

    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Completed {operation_name}",
            operation=operation_name,
            processing_time_ms=round(elapsed_ms, 2),
            **context
        )

        if elapsed_ms > LoggingConfig.LOG_SLOW_OPERATION_THRESHOLD_MS:
            logger.warning(
                f"Slow operation detected: {operation_name}",
                operation=operation_name,
                processing_time_ms=round(elapsed_ms, 2),
                threshold_ms=LoggingConfig.LOG_SLOW_OPERATION_THRESHOLD_MS,
                **context
            )


def timed(operation_name: Optional[str] = None, logger: Optional[StructuredLogger] = None):
    """Decorator for timing function calls."""
    def decorator(func: Callable) -> Callable:
        op_name = operation_name or f"{func.__module__}.{func.__name__}"
        log = logger or get_structured_logger(func.__module__)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with log_timing(op_name, logger=log):
                return func(*args, **kwargs)

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            with log_timing(op_name, logger=log):
                return await func(*args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def setup_logging() -> logging.Logger:
    """Set up structured logging and return the package logger."""
    LoggingConfig.setup_logging()
    return get_logger("saleingest")
