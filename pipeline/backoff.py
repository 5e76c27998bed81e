"""Retry policy for failed events."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from core.config import PipelineConfig


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 5000
    exponential: bool = True
    enabled: bool = True

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.retry_delay_ms,
            exponential=config.exponential_backoff,
            enabled=config.auto_retry,
        )

    def delay_ms(self, retry_count: int) -> int:
        """Delay before the retry that follows ``retry_count`` earlier retries.

        5000, 10000, 20000 ms for counts 0, 1, 2 with the defaults.
        """
        if not self.exponential:
            return self.base_delay_ms
        return self.base_delay_ms * (2 ** max(retry_count, 0))

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + timedelta(milliseconds=self.delay_ms(retry_count))

    def should_retry(self, retry_count: int, retryable: bool) -> bool:
        return self.enabled and retryable and retry_count < self.max_attempts

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_attempts


def backoff_delay_ms(retry_count: int, base_delay_ms: int = 5000, exponential: bool = True) -> int:
    return RetryPolicy(base_delay_ms=base_delay_ms, exponential=exponential).delay_ms(retry_count)


def remaining_delay_seconds(next_retry_at: Optional[datetime], now: datetime) -> float:
    """Seconds until a scheduled retry is due, never negative."""
    if next_retry_at is None:
        return 0.0
    return max((next_retry_at - now).total_seconds(), 0.0)
