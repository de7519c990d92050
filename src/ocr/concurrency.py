"""Small asyncio helpers shared by the raster, PDF and recognition stages."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from src.ocr.errors import OcrError, OcrErrorCode

logger = logging.getLogger("bioage.ocr.concurrency")

T = TypeVar("T")
R = TypeVar("R")


async def with_deadline(aw: Awaitable[T], deadline: float | None, what: str = "operation") -> T:
    """Await *aw*, raising a retryable EXTRACTION_TIMEOUT after *deadline* seconds.

    ``deadline=None`` waits indefinitely.
    """
    if deadline is None:
        return await aw
    try:
        return await asyncio.wait_for(aw, timeout=deadline)
    except asyncio.TimeoutError as exc:
        logger.warning("%s timed out after %.1fs", what, deadline)
        raise OcrError(
            OcrErrorCode.EXTRACTION_TIMEOUT,
            exc,
            message=f"{what} timed out after {deadline:g}s",
        ) from exc


async def gather_bounded(
    items: Sequence[T],
    worker: Callable[[T, int], Awaitable[R]],
    concurrency: int,
) -> list[R]:
    """Run ``worker(item, index)`` over *items* with at most *concurrency* in flight.

    Results come back in input order regardless of completion order.  The
    first failure propagates once every started worker has settled.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)
    results: list[R | None] = [None] * len(items)

    async def _run(item: T, index: int) -> None:
        async with semaphore:
            results[index] = await worker(item, index)

    outcomes = await asyncio.gather(
        *(_run(item, i) for i, item in enumerate(items)),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results  # type: ignore[return-value]
