# stock_hub/automation/retry.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from stock_hub.errors import RetryableFetchError, AuthRedirectError

logger = logging.getLogger(__name__)

# a lost session is retried after re-login; other fatal errors (bad credentials) are not
RETRY_ON: Tuple[Type[BaseException], ...] = (RetryableFetchError, AuthRedirectError)


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Delay before the attempt after ``attempt``: base, 2*base, 4*base, ..."""
    return base_delay_s * (2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[int], Awaitable[Any]],
    *,
    attempts: int,
    base_delay_s: float,
    retry_on: Tuple[Type[BaseException], ...] = RETRY_ON,
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    """
    Run ``operation(attempt)`` until it succeeds or the attempt budget runs out.

    Only ``retry_on`` errors are retried; the last one is re-raised when the
    budget is exhausted. ``on_retry`` runs before the backoff sleep.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(base_delay_s, attempt)
            logger.warning(f"{label} attempt {attempt}/{attempts} failed ({type(e).__name__}: {e}); retrying in {delay:.1f}s")
            if on_retry is not None:
                await on_retry(attempt, e)
            await sleep(delay)
