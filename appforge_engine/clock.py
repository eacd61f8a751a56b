import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall time, monotonic time and sleeping behind one seam so polling and backoff can be driven in tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float):
        if seconds > 0:
            await asyncio.sleep(seconds)


class CancelToken:
    def __init__(self):
        self._cancelled = False
        self.reason = None

    def cancel(self, reason: str = "cancelled by caller"):
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled
