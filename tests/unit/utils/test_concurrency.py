"""Tests for the scheduler's async concurrency primitives."""

from __future__ import annotations

import asyncio

import pytest

from conductor.utils.concurrency import BoundedSemaphore, CancellationToken


@pytest.mark.asyncio
async def test_cancellation_token_keeps_first_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled

    token.cancel("user abort")
    token.cancel("second")

    assert token.is_cancelled
    assert token.reason == "user abort"
    await asyncio.wait_for(token.wait(), timeout=1)


@pytest.mark.asyncio
async def test_bounded_semaphore_try_acquire_and_release() -> None:
    slots = BoundedSemaphore(2)
    assert slots.try_acquire()
    assert slots.try_acquire()
    assert not slots.try_acquire()

    slots.release()
    assert slots.try_acquire()

    slots.release()
    slots.release()
    with pytest.raises(RuntimeError, match="more times than acquire"):
        slots.release()


@pytest.mark.asyncio
async def test_wait_released_wakes_on_the_next_release() -> None:
    slots = BoundedSemaphore(1)
    assert slots.try_acquire()
    waiter = asyncio.ensure_future(slots.wait_released())
    await asyncio.sleep(0)
    assert not waiter.done()

    slots.release()

    await asyncio.wait_for(waiter, timeout=1)
    assert slots.try_acquire()


def test_bounded_semaphore_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError, match="limit must be > 0"):
        BoundedSemaphore(0)
