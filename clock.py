from __future__ import annotations

import asyncio
import time
from typing import Optional


def now_unix_ms() -> int:
    return int(time.time() * 1000)


class Clock:
    """Monotonic run clock.

    ``start()`` pins the origin; ``elapsed()`` and ``sleep_until()`` are
    relative to it so the controller can schedule ticks on absolute
    offsets instead of accumulating sleep drift.
    """

    def __init__(self) -> None:
        self._origin: Optional[float] = None

    def now(self) -> float:
        return time.monotonic()

    def start(self) -> None:
        self._origin = self.now()

    def elapsed(self) -> float:
        if self._origin is None:
            return 0.0
        return max(0.0, self.now() - self._origin)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    async def sleep_until(self, offset_s: float, wake_event: Optional[asyncio.Event] = None) -> bool:
        """Sleep until ``offset_s`` seconds after start.

        Returns True if ``wake_event`` was set before the deadline.
        """
        remaining = offset_s - self.elapsed()
        if wake_event is None:
            await self.sleep(remaining)
            return False
        if wake_event.is_set():
            return True
        if remaining <= 0:
            return False
        try:
            await asyncio.wait_for(wake_event.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            return False
        return True
