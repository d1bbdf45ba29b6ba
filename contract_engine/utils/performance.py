"""
Timing helpers for engine operations.
"""

import inspect
import time
from functools import wraps
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


def elapsed_ms(start: float) -> float:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return (time.perf_counter() - start) * 1000


def _report(name: str, start: float, error: Optional[BaseException] = None) -> None:
    duration_ms = round(elapsed_ms(start), 2)
    if error is None:
        logger.info(
            "operation_complete",
            operation=name,
            duration_ms=duration_ms,
            status="success"
        )
    else:
        logger.error(
            "operation_failed",
            operation=name,
            duration_ms=duration_ms,
            status="error",
            error=str(error)
        )


def log_execution_time(operation_name: Optional[str] = None):
    """
    Decorator logging how long a sync or async callable took.

    Usage:
        @log_execution_time("model_load")
        async def load(...):
            ...
    """
    def decorator(func: Callable):
        name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _report(name, start, e)
                raise
            _report(name, start)
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _report(name, start, e)
                raise
            _report(name, start)
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
