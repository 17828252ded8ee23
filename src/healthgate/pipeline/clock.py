"""Time source and cancellable waiting for health polling.

The orchestrator never calls time.monotonic() or asyncio.sleep() directly.
It goes through a Clock so tests can substitute a clock that advances
simulated time instantly.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source with a cancellable sleep."""

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    async def sleep(self, seconds: float, cancel_event: asyncio.Event | None = None) -> bool:
        """Wait for ``seconds`` or until ``cancel_event`` is set.

        Returns:
            True if the wait was interrupted by cancellation
        """
        ...


class SystemClock:
    """Clock backed by time.monotonic() and the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, cancel_event: asyncio.Event | None = None) -> bool:
        if cancel_event is None:
            if seconds > 0:
                await asyncio.sleep(seconds)
            return False

        if cancel_event.is_set():
            return True
        if seconds <= 0:
            return False

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            # Normal timeout, keep polling
            return False
        return True
