import asyncio
import contextlib
from typing import Awaitable, TypeVar

from .errors import SearchCancelled

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal shared by everything a search starts.

    Work checks the token before starting and races in-flight awaits
    against it, so firing it unwinds at the next suspension point.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SearchCancelled()

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first."""
        task = asyncio.ensure_future(aw)
        if self._event.is_set():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise SearchCancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise SearchCancelled()


async def guarded(aw: Awaitable[T], cancel: CancelToken | None) -> T:
    if cancel is None:
        return await aw
    return await cancel.run(aw)


async def pause(seconds: float, cancel: CancelToken | None) -> None:
    """asyncio.sleep that wakes up early (raising) when cancelled."""
    if seconds <= 0:
        if cancel is not None:
            cancel.raise_if_cancelled()
        return
    await guarded(asyncio.sleep(seconds), cancel)
