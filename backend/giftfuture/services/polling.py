"""Bounded waiting and retry primitives.

Fill polling, ledger confirmation and transient-error retries all go through
these two helpers so cadence and budgets are configured in one place.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from giftfuture.services.errors import WaitExhaustedError

logger = structlog.get_logger()

T = TypeVar("T")


def _next_interval(interval: float, backoff: float, max_interval: Optional[float]) -> float:
    interval = interval * backoff
    if max_interval is not None:
        interval = min(interval, max_interval)
    return interval


async def await_condition(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    delay_first: bool = False,
    tolerate: Tuple[Type[BaseException], ...] = (),
    label: str = "condition",
) -> T:
    """
    Call `probe` until it returns something other than None.

    Args:
        probe: Coroutine factory; None means "not yet".
        attempts: Maximum number of probe calls.
        interval: Seconds to sleep between probes.
        backoff: Multiplier applied to the interval after every probe.
        max_interval: Upper bound for the interval when backing off.
        delay_first: Sleep before the first probe as well.
        tolerate: Exceptions treated as "not yet" instead of propagating.
        label: Name used in log events.

    Returns:
        The first non-None probe result.

    Raises:
        WaitExhaustedError: when every attempt came back empty.
    """
    last_error: Optional[BaseException] = None
    delay = interval

    for attempt in range(1, attempts + 1):
        if attempt > 1 or delay_first:
            await asyncio.sleep(delay)
            delay = _next_interval(delay, backoff, max_interval)

        try:
            result = await probe()
        except tolerate as e:
            last_error = e
            logger.warning(
                "Probe failed, will keep waiting",
                label=label,
                attempt=attempt,
                attempts=attempts,
                error=str(e),
            )
            continue

        if result is not None:
            return result

    logger.warning("Wait budget exhausted", label=label, attempts=attempts)
    raise WaitExhaustedError(attempts, last_error)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    interval: float,
    retry_on: Tuple[Type[BaseException], ...],
    backoff: float = 2.0,
    label: str = "operation",
) -> T:
    """Run `operation`, retrying on `retry_on` errors up to `attempts` times.

    The last error is re-raised once the budget is spent.
    """
    delay = interval
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(
                    "Transient retries exhausted",
                    label=label,
                    attempts=attempts,
                    error=str(e),
                )
                raise
            logger.warning(
                "Transient failure, retrying",
                label=label,
                attempt=attempt,
                attempts=attempts,
                retry_in=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
            delay = delay * backoff
    raise RuntimeError("retry_transient called with attempts < 1")
