"""Network helpers such as retry wrappers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    ``max_attempts`` counts the first try, so the default of ``1`` means
    "never retry".
    """

    max_attempts: int = 1
    backoff: float = 0.5
    max_backoff: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff must be non-negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""
        return min(self.max_backoff, self.backoff * (2 ** (attempt - 1)))

    def retrying(self, retry: Any) -> AsyncRetrying:
        """tenacity controller with this policy's stop and wait."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff),
            retry=retry,
            reraise=True,
        )


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy = RetryPolicy(max_attempts=3),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
    **kwargs: Any,
) -> T:
    """Await ``func`` with retry logic.

    Only exceptions in ``retry_on`` for which ``should_retry`` (when given)
    returns ``True`` are retried; anything else propagates immediately.
    """

    condition = retry_if_exception_type(retry_on)
    if should_retry is not None:
        condition = condition & retry_if_exception(should_retry)
    async for attempt in policy.retrying(condition):
        with attempt:
            result = await func(*args, **kwargs)
    return result


__all__ = ["RetryPolicy", "retry_async"]
