"""Exponential backoff between attempts.

The delay before attempt *n + 1*, after *n* attempts have been made, is
``base * 2 ** (n - 1)``: with the default one-second base that is 1s, 2s,
4s, 8s ...  An optional cap bounds a single delay.

Waits are interruptible: :meth:`BackoffPolicy.wait` returns early when the
owning session's cancellation event fires.
"""

from __future__ import annotations

import asyncio
import logging

from extraction_orchestrator.orchestrator.config import BACKOFF_FACTOR

logger = logging.getLogger(__name__)


class BackoffPolicy:
    """Exponential backoff schedule.

    Args:
        base: Delay in seconds after the first attempt.
        factor: Growth factor between consecutive delays.
        cap: Optional ceiling in seconds on a single delay.
    """

    def __init__(
        self,
        base: float = 1.0,
        factor: float = BACKOFF_FACTOR,
        cap: float | None = None,
    ) -> None:
        if base < 0:
            raise ValueError("backoff base must be non-negative")
        if factor < 1:
            raise ValueError("backoff factor must be at least 1")
        self.base = base
        self.factor = factor
        self.cap = cap

    def delay(self, attempt: int) -> float:
        """Return the wait in seconds after ``attempt`` attempts (1-based)."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        value = self.base * self.factor ** (attempt - 1)
        if self.cap is not None:
            value = min(value, self.cap)
        return value

    async def wait(self, attempt: int, cancel_event: asyncio.Event | None = None) -> bool:
        """Sleep for :meth:`delay` of ``attempt``.

        Args:
            attempt: Number of attempts already made.
            cancel_event: Event that aborts the wait when set.

        Returns:
            ``True`` if the full delay elapsed, ``False`` if the wait was
            cut short by cancellation.
        """
        seconds = self.delay(attempt)
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return True
        if cancel_event.is_set():
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        logger.debug("orchestrator: backoff after attempt %d interrupted", attempt)
        return False

    def __repr__(self) -> str:
        return f"BackoffPolicy(base={self.base}, factor={self.factor}, cap={self.cap})"
