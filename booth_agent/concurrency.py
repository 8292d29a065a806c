"""Cancellation, bounded retries and batched fan-out shared by every network caller.

- CancelToken: one per request, raised when the client goes away
- retry_with_timeout: per-attempt timeout, bounded attempts, no retry after cancellation
- run_in_batches: fixed-size concurrent batches with a barrier between them"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class RequestCancelled(Exception):
    """The client disconnected; stop all work without producing output."""


class RetryExhausted(Exception):
    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class CancelToken:
    """Request-wide cancellation signal that aborts whatever is in flight."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first, in which case ``aw`` is cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            elif isinstance(aw, asyncio.Future):
                aw.cancel()
            raise RequestCancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if self._event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise RequestCancelled()
        waiter.cancel()
        return task.result()


async def retry_with_timeout(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    timeout: float,
    token: Optional[CancelToken] = None,
    label: str = "call",
) -> T:
    """Run ``call`` up to ``attempts`` times, each bounded by ``timeout`` seconds."""
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            logger.debug("[Retry] %s attempt %d/%d", label, attempt, attempts)
            bounded = asyncio.wait_for(call(), timeout=timeout)
            if token is not None:
                return await token.guard(bounded)
            return await bounded
        except RequestCancelled:
            raise
        except Exception as e:
            last_error = e
            timed_out = isinstance(e, asyncio.TimeoutError)
            logger.warning(
                "[Retry] %s attempt %d/%d failed: %s (timeout=%s)",
                label, attempt, attempts, e or type(e).__name__, timed_out,
            )
    if token is not None:
        token.raise_if_cancelled()
    raise RetryExhausted(label, attempts, last_error)


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
    token: Optional[CancelToken] = None,
) -> List[Any]:
    """Apply ``worker`` to every item, ``batch_size`` at a time.

    Each batch is awaited in full before the next starts. A worker exception is
    returned in place of its result rather than raised.
    """
    results: List[Any] = []
    size = max(1, batch_size)
    for start in range(0, len(items), size):
        batch = items[start:start + size]
        gathered = asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
        if token is not None:
            results.extend(await token.guard(gathered))
        else:
            results.extend(await gathered)
    return results
