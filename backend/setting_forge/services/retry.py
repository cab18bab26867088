"""Bounded exponential backoff for transient provider failures."""
import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from setting_forge.config import settings
from setting_forge.errors import is_transient_error


logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float | None = None, jitter: float | None = None) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2^attempt plus random jitter."""
    base_delay = settings.stream_retry_base_delay if base_delay is None else base_delay
    jitter = settings.stream_retry_jitter if jitter is None else jitter
    return base_delay * (2 ** attempt) + random.uniform(0, jitter * base_delay)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: int | None = None,
    base_delay: float | None = None,
    jitter: float | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation``, retrying transient errors up to ``attempts`` extra times."""
    attempts = settings.stream_retry_attempts if attempts is None else attempts
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_transient_error(e) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, jitter)
            attempt += 1
            logger.warning("%s failed with transient error (%s), retry %d/%d in %.2fs",
                           label, e, attempt, attempts, delay)
            await asyncio.sleep(delay)
