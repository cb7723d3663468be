import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from leadsync.errors import RetryExhaustedError

T = TypeVar("T")

logger = logging.getLogger(__name__)

BackoffFn = Callable[[int], float]
SleepFn = Callable[[float], Awaitable[None]]


def exponential_backoff(base_seconds: float = 60.0, cap_seconds: Optional[float] = None) -> BackoffFn:
    """Return a backoff function giving ``base_seconds * 2**attempt``.

    With the default base of one minute the delays are 2, 4, 8... minutes.
    """

    def _delay(attempt: int) -> float:
        delay = base_seconds * (2 ** attempt)
        if cap_seconds is not None:
            delay = min(delay, cap_seconds)
        return delay

    return _delay


async def run_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff: BackoffFn,
    sleep: SleepFn = asyncio.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Run ``func`` up to ``max_attempts`` times, sleeping ``backoff(attempt)`` between tries.

    Raises:
        RetryExhaustedError: when every attempt failed. The last error is
            attached as ``last_error`` and chained as the cause.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exc: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except retry_on as exc:
            last_exc = exc
            logger.warning(
                "%s failed on attempt %s/%s: %s", label, attempt, max_attempts, exc
            )
            if attempt >= max_attempts:
                break
            await sleep(backoff(attempt))

    raise RetryExhaustedError(max_attempts, last_exc) from last_exc
