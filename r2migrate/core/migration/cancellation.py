"""
Cooperative cancellation and bounded retries.

A single CancellationToken is created per run and threaded through every
suspension point: source fetches, part PUTs, signed store calls, and the
fixed delays between attempts and items. It carries two independent
signals:

- cancel(): hard stop. No new network call starts and any call already
  in flight is interrupted immediately.
- request_stop(): soft stop. The batch loop finishes the current item and
  does not start another one. In-flight work is untouched.

retry_async is the one place that implements "N attempts, fixed delay,
give up on cancellation", so part uploads and source fetches behave the
same way.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Shared cancel / stop signal for one migration run."""

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._stop_requested = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def should_stop(self) -> bool:
        """True when the batch loop must not start another item."""
        return self._stop_requested or self.cancelled

    def cancel(self) -> None:
        self._cancelled.set()

    def request_stop(self) -> None:
        self._stop_requested = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, abandoning it as soon as the token is cancelled.

        Raises OperationCancelledError if the token was already cancelled
        or fires while the awaitable is pending.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # the call failed while being torn down; cancellation wins
            logger.debug(
                "In-flight call failed during cancellation",
                extra={"error": str(e)}
            )
        raise OperationCancelledError()

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes up early (and raises) on cancellation."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.run(asyncio.sleep(seconds))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay_seconds: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    token: Optional[CancellationToken] = None,
    description: str = "operation",
) -> T:
    """
    Run `operation` up to `attempts` times with a fixed delay in between.

    Only exceptions listed in `retry_on` are retried; anything else
    propagates immediately. OperationCancelledError is never retried.
    The last retryable error is re-raised once the budget is spent.

    `operation` is a zero-argument factory so every attempt gets a
    fresh coroutine.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    token = token or CancellationToken()

    for attempt in range(1, attempts + 1):
        token.raise_if_cancelled()
        try:
            return await token.run(operation())
        except OperationCancelledError:
            raise
        except retry_on as e:
            if attempt >= attempts:
                logger.error(
                    f"{description} failed after {attempts} attempts",
                    extra={"error": str(e), "attempts": attempts}
                )
                raise
            logger.warning(
                f"{description} failed, retrying",
                extra={
                    "error": str(e),
                    "attempt": attempt,
                    "remaining": attempts - attempt,
                }
            )
            await token.sleep(delay_seconds)

    # unreachable: the loop either returns or raises
    raise AssertionError("retry loop exited without a result")
