"""
Retry/backoff executor for transient network failures.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import GatewayError, MaxRetriesExceeded

T = TypeVar("T")

TRANSIENT_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    TimeoutError,
    ConnectionError,
)


def is_transient(exc: BaseException) -> bool:
    """Timeouts, lost connections and unreachable hosts are worth retrying."""
    if isinstance(exc, GatewayError):
        return exc.transient
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before the retry that follows zero-based ``attempt``."""
    return base_delay * (2 ** attempt)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Run ``operation`` up to ``max_attempts`` times.

    Transient failures wait ``base_delay * 2**attempt`` before the next try.
    Permanent failures and the final transient failure propagate unchanged.
    """
    if max_attempts <= 0:
        raise MaxRetriesExceeded()

    def _before_sleep(retry_state: RetryCallState):
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Retry attempt {retry_state.attempt_number}/{max_attempts} "
            f"after {delay:.2f}s - Error: {exc}"
        )
        if on_retry:
            on_retry(retry_state.attempt_number, exc, delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        retry=retry_if_exception(is_transient),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            result = await operation()
            if attempt.retry_state.attempt_number > 1:
                logger.info(f"Operation succeeded after {attempt.retry_state.attempt_number} attempts")
    return result
