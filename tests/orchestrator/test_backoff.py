"""Tests for the exponential backoff policy."""

from __future__ import annotations

import asyncio
import time

import pytest

from extraction_orchestrator.orchestrator.backoff import BackoffPolicy


class TestDelay:
    def test_default_schedule_doubles_from_one_second(self) -> None:
        policy = BackoffPolicy()
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_cap_bounds_single_delay(self) -> None:
        policy = BackoffPolicy(base=1.0, cap=3.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_zero_base_never_waits(self) -> None:
        assert BackoffPolicy(base=0.0).delay(10) == 0.0

    def test_attempt_numbers_start_at_one(self) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy().delay(0)

    def test_invalid_parameters(self) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(base=-1.0)
        with pytest.raises(ValueError):
            BackoffPolicy(factor=0.5)


@pytest.mark.asyncio
class TestWait:
    async def test_full_delay_elapses(self) -> None:
        assert await BackoffPolicy(base=0.01).wait(1) is True

    async def test_elapses_with_unset_cancel_event(self) -> None:
        assert await BackoffPolicy(base=0.01).wait(1, asyncio.Event()) is True

    async def test_already_cancelled_returns_immediately(self) -> None:
        event = asyncio.Event()
        event.set()
        started = time.monotonic()
        assert await BackoffPolicy(base=30.0).wait(1, event) is False
        assert time.monotonic() - started < 1.0

    async def test_cancel_interrupts_long_wait(self) -> None:
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, event.set)
        started = time.monotonic()
        assert await BackoffPolicy(base=30.0).wait(3, event) is False
        assert time.monotonic() - started < 5.0
