"""
Retry policy for remote calls.

Only ``TransientError`` is retried. Anything else propagates on the first
attempt; a transient failure that outlives the budget is escalated to
``MaxRetriesExceededError``.
"""

from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from demoforge.config import Settings
from demoforge.errors import MaxRetriesExceededError, TransientError

logger = structlog.get_logger()

T = TypeVar("T")


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Transient failure, retrying",
            operation=operation,
            attempt=state.attempt_number,
            error=str(error),
        )
    return before_sleep


async def call_with_retries(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    settings: Settings,
    attempts: Optional[int] = None,
) -> T:
    """
    Await ``fn()`` under exponential backoff.

    Args:
        operation: Name used in logs and the escalated error
        fn: Zero-argument coroutine factory; called once per attempt
        settings: Source of the backoff parameters
        attempts: Override for ``provisioning_max_attempts``

    Returns:
        Whatever ``fn`` returns on its first successful attempt
    """
    max_attempts = attempts or settings.provisioning_max_attempts
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_seconds,
            max=settings.retry_backoff_max_seconds,
        ),
        before_sleep=_log_retry(operation),
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await fn()
    except RetryError as e:
        last = e.last_attempt.exception()
        logger.error("Retries exhausted", operation=operation, attempts=max_attempts, error=str(last))
        raise MaxRetriesExceededError(
            f"{operation}: gave up after {max_attempts} attempts",
            detail=str(last),
        ) from last

    return result
