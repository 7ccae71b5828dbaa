import asyncio
from typing import Awaitable, Callable, TypeVar

from studyquest.core.errors import UpstreamTransientError
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_AGENT)

T = TypeVar("T")


async def retry_with_backoff(
    async_func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 0.5,
    retryable_errors: tuple[type[Exception], ...] = (UpstreamTransientError, asyncio.TimeoutError),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``async_func`` up to ``max_retries`` times.

    Only ``retryable_errors`` are retried, with exponential backoff between
    attempts; anything else (safety rejections included) propagates on the
    first occurrence. The last retryable error is re-raised after exhaustion.
    """
    attempts = max(1, max_retries)
    last_exception: Exception | None = None
    for attempt in range(attempts):
        try:
            return await async_func()
        except retryable_errors as exc:  # type: ignore[misc]
            last_exception = exc
            if attempt == attempts - 1:
                break
            delay = base_delay_seconds * (2**attempt)
            logger.warning("Transient upstream failure (attempt %s/%s), retrying in %.2fs: %s", attempt + 1, attempts, delay, exc)
            await sleep(delay)
    raise last_exception  # type: ignore[misc]
