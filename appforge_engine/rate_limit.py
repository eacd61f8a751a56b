from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from .logger_setup import logger


class RateLimitBudget:
    """Advisory view of one service's rate limit: calls remaining and when the window resets.

    Updated from response headers after every call. It never blocks a call by
    itself; the retry policy reads it to pick a backoff delay.
    """

    def __init__(self, service: str, remaining: Optional[int] = None, reset_at: Optional[datetime] = None):
        self.service = service
        self.remaining = remaining
        self.reset_at = reset_at

    def update_from_headers(self, headers: httpx.Headers):
        remaining = headers.get("X-RateLimit-Remaining")
        reset = headers.get("X-RateLimit-Reset")
        if remaining is not None:
            try:
                self.remaining = int(remaining)
            except ValueError:
                logger.debug(f"Ignoring malformed X-RateLimit-Remaining '{remaining}' from {self.service}")
        if reset is not None:
            try:
                self.reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                logger.debug(f"Ignoring malformed X-RateLimit-Reset '{reset}' from {self.service}")

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0

    def seconds_until_reset(self, now: datetime) -> Optional[float]:
        if self.reset_at is None:
            return None
        return max(0.0, (self.reset_at - now).total_seconds())


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code == 403:
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        # GitHub secondary limits come back as 403 with a message and no header change
        return "rate limit" in response.text.lower()
    return False


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    def backoff_delay(self, attempt: int, response: Optional[httpx.Response],
                      budget: Optional[RateLimitBudget], now: datetime) -> float:
        """Seconds to wait before retry number `attempt` (0-based)."""
        delay = None
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    delay = float(retry_after)
                except ValueError:
                    delay = None
        if delay is None and budget is not None and budget.exhausted:
            until_reset = budget.seconds_until_reset(now)
            if until_reset is not None:
                delay = until_reset + 1.0
        if delay is None:
            delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)
