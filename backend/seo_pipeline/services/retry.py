import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import is_transient_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff. Delays are in milliseconds."""

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    should_retry: Callable[[BaseException], bool] = is_transient_error

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        return min(self.initial_delay_ms * (2 ** attempt), self.max_delay_ms) / 1000


def _log_retry(name: str, max_retries: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry.scheduled",
            operation=name,
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    name: str,
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Runs ``operation`` up to ``max_retries + 1`` times.

    Non-retryable errors and the error of the final attempt are re-raised
    unchanged. Backoff is ``min(initial * 2**attempt, max)`` without jitter.
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=wait_exponential(
            multiplier=policy.initial_delay_ms / 1000,
            max=policy.max_delay_ms / 1000,
        ),
        retry=retry_if_exception(policy.should_retry),
        before_sleep=_log_retry(name, policy.max_retries),
        reraise=True,
        sleep=sleep,
    )

    # tenacity only awaits coroutine functions; a lambda returning a coroutine would not run
    async def call() -> T:
        return await operation()

    return await retrying(call)
