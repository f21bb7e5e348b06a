"""Async concurrency primitives used by the scheduler."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


class BoundedSemaphore:
    """Non-blocking permit counter for worker dispatch slots.

    The scheduler polls ``try_acquire`` between dispatch rounds instead of
    awaiting a permit, so one request waiting on capacity never stalls another.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._in_use = 0
        self._released = asyncio.Event()

    def try_acquire(self) -> bool:
        if self._in_use >= self._limit:
            return False
        self._in_use += 1
        return True

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._released.set()
        self._released = asyncio.Event()

    async def wait_released(self) -> None:
        """Wait until any permit is returned."""
        await self._released.wait()


__all__ = ["BoundedSemaphore", "CancellationToken"]
