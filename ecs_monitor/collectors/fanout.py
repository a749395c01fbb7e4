"""Concurrent fan-out where the first failure aborts the whole batch."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_or_cancel(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int | None = None,
) -> list[R]:
    """Run ``worker(item)`` for every item concurrently, results in input order.

    With ``limit`` set, at most that many workers run at once.  If any worker
    raises, every other worker still pending or running is cancelled and the
    first exception propagates unchanged (no ExceptionGroup, no partial list).
    """
    semaphore = asyncio.Semaphore(limit) if limit and limit > 0 else None

    async def _run(item: T) -> R:
        if semaphore is None:
            return await worker(item)
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
