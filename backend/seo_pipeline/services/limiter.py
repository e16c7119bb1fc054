import asyncio
from typing import Awaitable, Callable, TypeVar


T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Caps the number of in-flight operations of one kind.

    Waiters beyond the cap are admitted in submission order; from Python
    3.11.1 asyncio's semaphore hands released slots to the oldest waiter.
    """

    def __init__(self, name: str, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    async def limit(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            self._active += 1
            try:
                return await operation()
            finally:
                self._active -= 1
