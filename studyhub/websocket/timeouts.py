"""Timeout and retry helper for calls that leave the process."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_timeout(
    factory: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int = 1,
    backoff: float = 0.2,
    operation: str = "external call",
) -> T:
    """
    Await an external call with a hard timeout, retrying on timeout.

    Only timeouts are retried. Any other exception propagates unchanged.
    The delay between attempts doubles each time, starting at `backoff`.

    Args:
        factory: Zero-argument callable returning a fresh awaitable per attempt
        timeout: Seconds allowed per attempt
        retries: Extra attempts after the first timeout
        backoff: Delay before the first retry
        operation: Label used in logs and the error message

    Returns:
        The call's result

    Raises:
        OperationTimeoutError: If every attempt timed out
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=backoff),
            retry=retry_if_exception_type(asyncio.TimeoutError),
            before_sleep=before_sleep_log(logger, logging.INFO),
        ):
            with attempt:
                return await asyncio.wait_for(factory(), timeout=timeout)
    except RetryError as e:
        logger.warning(
            f"{operation} timed out after {e.last_attempt.attempt_number} attempt(s) "
            f"({timeout}s each)"
        )
        raise OperationTimeoutError(f"{operation} timed out") from e
