"""Retry timing for the invite worker."""

from dataclasses import dataclass
from typing import Optional

from .config import Settings


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 50
    base_delay: int = 5
    max_delay: int = 3600
    retry_after_grace: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_backoff_seconds,
            max_delay=settings.max_backoff_seconds,
            retry_after_grace=settings.retry_after_grace_seconds,
        )

    def exhausted(self, attempts: int) -> bool:
        return attempts > self.max_attempts

    def backoff(self, attempts: int) -> int:
        """base * 2**attempts, capped at max_delay."""
        if self.base_delay <= 0:
            return 0
        attempts = max(0, attempts)
        if attempts >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * 2**attempts)

    def delay_for(self, attempts: int, retry_after: Optional[int] = None) -> int:
        """
        Seconds to wait before the next delivery.

        A provider hint wins (plus a small grace so we never come back early);
        otherwise exponential backoff on the attempt count.
        """
        if retry_after is not None and retry_after > 0:
            return retry_after + self.retry_after_grace
        return self.backoff(attempts)
