"""
Cooperative cancellation for search requests.

A ``CancellationToken`` is threaded through every per-file loop. Loops call
``raise_if_cancelled()`` before each iteration, so a cancelled search stops
promptly and the caller sees ``SearchCancelled`` instead of a truncated result.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar


T = TypeVar("T")
R = TypeVar("R")


class SearchCancelled(Exception):
    """Raised when a search is cancelled through its token."""


class CancellationToken:
    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise SearchCancelled(self.reason or "Search cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """Raise ``SearchCancelled`` if ``token`` is set and cancelled."""
    if token is not None:
        token.raise_if_cancelled()


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    max_concurrency: int,
    token: Optional[CancellationToken] = None,
) -> List[R]:
    """
    Apply ``worker`` to every item with at most ``max_concurrency`` in flight.

    Results keep input order. The token is checked before each item; the
    first exception (cancellation included) stops the remaining workers and
    is re-raised.
    """
    pending = list(items)
    results: List[Optional[R]] = [None] * len(pending)
    next_index = 0

    async def drain() -> None:
        nonlocal next_index
        while next_index < len(pending):
            check_cancelled(token)
            index = next_index
            next_index += 1
            results[index] = await worker(pending[index])

    workers = [asyncio.create_task(drain()) for _ in range(min(max_concurrency, len(pending)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]
