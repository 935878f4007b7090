"""Retry policy for provider calls.

Only errors tagged retryable (empty or malformed model output) are retried.
Fatal errors propagate on the attempt they occur; the fallback chain in
model_chain.py is the separate mechanism that may try another model.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from stancemap.services.scoring.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3


def attempt_label(action: str, attempt: int, max_attempts: int) -> str:
    return f"{action} (attempt {attempt}/{max_attempts})"


async def with_retry(
    fn: Callable[[str], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    action: str = "call",
    backoff_base: float = 0.0,
) -> T:
    """Await ``fn(label)`` up to ``max_attempts`` times.

    ``label`` embeds the attempt number so each logged attempt is
    distinguishable. Raises the last error once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        label = attempt_label(action, attempt, max_attempts)
        try:
            return await fn(label)
        except ProviderError as e:
            if not e.retryable or attempt == max_attempts:
                raise
            logger.warning("%s failed, retrying: %s", label, e.message)
            if backoff_base > 0:
                delay = backoff_base * (2 ** (attempt - 1)) + random.uniform(0, backoff_base)
                await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError("with_retry exited without a result")
