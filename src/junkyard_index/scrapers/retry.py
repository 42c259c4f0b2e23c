import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..cancellation import CancelToken, guarded, pause
from ..errors import TransientHTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    start_delay: float = 1.0
    max_delay: float = 10.0


async def with_backoff(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    cancel: CancelToken | None = None,
    label: str = "",
) -> T:
    """Run ``call`` with exponential backoff.

    Only TransientHTTPError is retried. PermanentHTTPError and
    SearchCancelled propagate on the first occurrence, and the backoff
    sleep wakes up early when the token fires.
    """

    def log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Request failed (attempt {state.attempt_number}/{policy.attempts})"
            f" for {label}: {exc}"
        )

    async def sleep(seconds: float) -> None:
        await pause(seconds, cancel)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.start_delay, max=policy.max_delay),
        retry=retry_if_exception_type(TransientHTTPError),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )

    result = None
    async for attempt in retrying:
        with attempt:
            if cancel is not None:
                cancel.raise_if_cancelled()
            result = await guarded(call(), cancel)
    return result
