"""Async retry with exponential backoff for transient database failures.

Only exceptions listed in ``retry_on`` are retried; anything else (domain
errors in particular) propagates on the first attempt. The last transient
exception is re-raised once attempts are exhausted.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)


logger = structlog.get_logger(__name__)

T = TypeVar('T')

DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 0.05
DEFAULT_MAX_DELAY = 1.0

# lock timeouts, serialization failures, "database is locked"
TRANSIENT_DB_EXCEPTIONS: tuple[type[Exception], ...] = (OperationalError,)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_DB_EXCEPTIONS,
    before_retry: Callable[[], Awaitable[Any]] | None = None,
) -> T:
    async def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            'Повтор после временной ошибки БД',
            attempt=retry_state.attempt_number,
            error=str(exc),
        )
        if before_retry is not None:
            await before_retry()

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential_jitter(initial=base_delay, max=max_delay, jitter=base_delay),
        before_sleep=_before_sleep,
        reraise=True,
    )
    return await retrying(fn)
