"""
Bounded exponential-backoff retry for transient storage failures.

Only TransientStorageError is retried. Every other error, including
ChecksumMismatchError, propagates on the first attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    attempts: int,
    base_delay: float,
    max_delay: float,
) -> T:
    """Run an async operation, retrying TransientStorageError with backoff.

    Args:
        operation: Zero-argument coroutine factory
        operation_name: Name used in log records
        attempts: Total attempts including the first
        base_delay: First backoff delay in seconds
        max_delay: Backoff ceiling in seconds

    Returns:
        Result of the operation

    Raises:
        TransientStorageError: After all attempts are exhausted
    """

    def _log_retry(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Transient failure in {operation_name}, retrying",
            extra={
                "operation": operation_name,
                "attempt": state.attempt_number,
                "error": str(error),
            },
        )

    @retry(
        retry=retry_if_exception_type(TransientStorageError),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def _execute_with_retry() -> T:
        return await operation()

    return await _execute_with_retry()
