import asyncio
from typing import Awaitable, Callable, TypeVar

from ..cancellation import CancelToken

T = TypeVar("T")


class ConcurrencyLimiter:
    """Caps in-flight tasks; queued tasks start in submission order."""

    def __init__(self, limit: int = 5):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)

    async def run(
        self, fn: Callable[[], Awaitable[T]], cancel: CancelToken | None = None
    ) -> T:
        if cancel is not None:
            cancel.raise_if_cancelled()
        async with self._semaphore:
            # The token may have fired while this task was queued
            if cancel is not None:
                cancel.raise_if_cancelled()
            return await fn()
