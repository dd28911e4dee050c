"""
Retry Policy for Transport Calls

Masks short transport hiccups with a fixed, bounded backoff schedule.
Longer outages are left to callers above the queue layer.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from loguru import logger

from webhook_queue.core.errors import ErrorKind, TaskQueueError

T = TypeVar("T")
H = TypeVar("H")

# One slot per attempt, so at most three attempts. A failed attempt waits its
# slot's delay before the next one; the last slot has no next attempt.
RETRY_SCHEDULE: tuple[float, ...] = (0.010, 0.020, 0.040)


def should_retry(error: BaseException) -> bool:
    """Only transport (queue-kind) failures are worth replaying."""
    return isinstance(error, TaskQueueError) and error.kind == ErrorKind.QUEUE


class Retry:
    """
    Step-wise walk through a retry schedule.

    The caller owns the loop, so an operation that consumes a resource on
    each attempt can restore it before asking for the next attempt.

    Usage:
        retry = Retry(should_retry)
        while True:
            try:
                return await op()
            except Exception as e:
                if not await retry.backoff(e):
                    raise
    """

    def __init__(
        self,
        should_retry: Callable[[BaseException], bool] = should_retry,
        schedule: Iterable[float] = RETRY_SCHEDULE,
    ):
        self._should_retry = should_retry
        self._delays = tuple(schedule)
        self.retries = 0

    async def backoff(self, error: BaseException) -> bool:
        """
        Wait before the next attempt.

        Args:
            error: Failure raised by the last attempt

        Returns:
            True if the caller should try again, False if `error` must be raised
        """
        if not self._should_retry(error):
            return False

        # Attempts made so far: the first one plus every retry
        if self.retries + 1 >= len(self._delays):
            return False

        delay = self._delays[self.retries]
        self.retries += 1
        logger.warning(
            f"Retrying after transport error (retry {self.retries}, "
            f"delay {delay * 1000:.0f}ms): {error}"
        )
        await asyncio.sleep(delay)
        return True


async def run_with_retries(
    op: Callable[[], Awaitable[T]],
    should_retry: Callable[[BaseException], bool] = should_retry,
    schedule: Iterable[float] = RETRY_SCHEDULE,
) -> T:
    """
    Run `op` under the retry schedule.

    `op` is called afresh for every attempt. Non-retryable failures are raised
    on first occurrence; retryable ones are raised once every slot of the
    schedule has been used by an attempt.
    """
    retry = Retry(should_retry, schedule)
    while True:
        try:
            return await op()
        except Exception as e:
            if not await retry.backoff(e):
                raise


class HandleSlot(Generic[H]):
    """
    In/out slot for a handle that is consumed by the call using it.

    An attempt takes the handle out; a failed attempt puts it back so the
    next attempt has it again; a successful attempt leaves the slot empty.
    """

    def __init__(self, handle: Optional[H]):
        self._handle = handle

    @property
    def empty(self) -> bool:
        return self._handle is None

    def take(self) -> H:
        if self._handle is None:
            raise RuntimeError("handle slot is empty")
        handle, self._handle = self._handle, None
        return handle

    def put(self, handle: H) -> None:
        self._handle = handle
