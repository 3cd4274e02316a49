import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from catalog_updater.errors import RateLimitedError, RemoteServiceError


T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "rate limit", "throttled")


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, RemoteServiceError):
        return False
    # Untyped transport errors only carry a message.
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


async def run_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn`` until it succeeds or a retry is not allowed.

    Errors rejected by ``should_retry`` propagate unchanged on the first
    attempt. Retryable errors that persist through ``max_attempts`` raise
    ``RetryExhaustedError`` chained to the last error.
    """
    last_error: Exception | None = None
    attempts = max(max_attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if not retry_allowed:
                raise
            if attempt >= attempts:
                break
            await sleep(backoff_seconds)

    raise RetryExhaustedError(str(last_error), attempts) from last_error
