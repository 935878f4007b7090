"""Batch dispatcher with all-settled semantics.

Every batch runs as its own asyncio task. A failed batch is collected as an
exception in the result list and never cancels its siblings.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from stancemap.services.scoring.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

B = TypeVar("B")
R = TypeVar("R")


async def dispatch_all(
    batches: Sequence[B],
    process_batch: Callable[[B], Awaitable[R]],
    *,
    rate_limiter: Optional[RateLimiter] = None,
    warm_first: bool = False,
    on_settled: Optional[Callable[[int, Any], Awaitable[None]]] = None,
) -> List[Any]:
    """Run ``process_batch`` over every batch and return outcomes in input order.

    With a rate limiter, each task waits for a slot before calling
    ``process_batch`` but is still launched immediately. With ``warm_first``
    the first batch runs alone so later batches can hit a warm prompt cache.
    """
    results: List[Any] = [None] * len(batches)

    async def run_one(index: int, batch: B) -> None:
        try:
            if rate_limiter is not None:
                await rate_limiter.wait_for_slot()
            outcome = await process_batch(batch)
        except Exception as e:
            logger.error("Batch %d/%d failed: %s", index + 1, len(batches), e)
            outcome = e
        results[index] = outcome
        if on_settled is not None:
            try:
                await on_settled(index, outcome)
            except Exception:
                logger.exception("Settle callback for batch %d failed", index + 1)

    start = 0
    if warm_first and len(batches) > 1:
        await run_one(0, batches[0])
        start = 1

    tasks = [
        asyncio.create_task(run_one(i, batches[i]))
        for i in range(start, len(batches))
    ]
    if tasks:
        await asyncio.gather(*tasks)

    failures = sum(1 for r in results if isinstance(r, Exception))
    if failures:
        logger.warning("%d of %d batches failed", failures, len(batches))
    return results
