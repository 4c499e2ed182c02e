"""Time source used by session lifecycles.

Session timeouts and sweeps read time and sleep through a Clock so they can
be driven by a manual clock in tests instead of the wall clock.
"""

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall-clock time and real sleeping."""

    def monotonic(self) -> float:
        """Seconds from an arbitrary fixed point; used for durations."""
        return time.monotonic()

    def now(self) -> datetime:
        """Current UTC time; used for timestamps reported to clients."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()
