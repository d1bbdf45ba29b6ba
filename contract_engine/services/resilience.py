"""
Resilience helpers for backend and plugin calls.

Retries use tenacity with bounded exponential backoff; timeouts are
bounded waits around a single awaitable. Errors that retrying cannot fix
(bad input, broken contracts, missing model) are never retried.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    BackendUnavailableError,
    InferenceError,
    ModelRequirementError,
    PluginContractError,
    PluginNotAvailableError,
    ValidationError,
)

logger = structlog.get_logger()

T = TypeVar("T")

NON_RETRYABLE_ERRORS = (
    ValidationError,
    ModelRequirementError,
    PluginContractError,
    PluginNotAvailableError,
    BackendUnavailableError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a call."""
    attempts: int = 3
    backoff_base_ms: float = 200.0
    backoff_max_ms: float = 2000.0

    @classmethod
    def from_settings(cls, analysis: Dict[str, Any], model: Dict[str, Any]) -> "RetryPolicy":
        """
        Build a policy from the configuration store.

        Args:
            analysis: The ``analysis`` namespace (backoff bounds)
            model: The ``model`` namespace (``retry_attempts``)
        """
        return cls(
            attempts=int(model.get("retry_attempts", cls.attempts)),
            backoff_base_ms=float(analysis.get("backoff_base_ms", cls.backoff_base_ms)),
            backoff_max_ms=float(analysis.get("backoff_max_ms", cls.backoff_max_ms)),
        )


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def log_attempt(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "operation_retry_scheduled",
            operation=operation,
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0,
            error=str(exception)
        )
    return log_attempt


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation"
) -> T:
    """
    Await ``operation()`` up to ``policy.attempts`` times.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempts and backoff bounds
        operation_name: Name used in retry logs

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last error once attempts are exhausted, or the first
            non-retryable error
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.attempts)),
        wait=wait_exponential(
            multiplier=policy.backoff_base_ms / 1000,
            max=policy.backoff_max_ms / 1000
        ),
        retry=retry_if_not_exception_type(NON_RETRYABLE_ERRORS),
        before_sleep=_log_before_sleep(operation_name),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result


async def bounded_wait(
    awaitable: Awaitable[T],
    timeout_ms: float,
    operation_name: str = "operation"
) -> T:
    """
    Await with a timeout, converting expiry into an ``InferenceError``.

    Args:
        awaitable: The call to bound
        timeout_ms: Timeout in milliseconds
        operation_name: Name used in the error message

    Raises:
        InferenceError: If the call does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        logger.error("operation_timed_out", operation=operation_name, timeout_ms=timeout_ms)
        raise InferenceError(f"{operation_name} timed out after {timeout_ms:.0f}ms")
