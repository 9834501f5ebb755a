from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from whoisp.errors import ResearchCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal shared by every stage of one run.

    Unlike task cancellation, firing the token never interrupts the code that
    owns the run: only awaits wrapped in `guard` / `sleep` observe it, and they
    raise `ResearchCancelledError` so callers can degrade instead of unwinding.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResearchCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        raise ResearchCancelledError(self.reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(delay))


async def guarded(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
