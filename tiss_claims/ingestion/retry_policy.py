"""
Retry policy for return ingestion.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from tiss_claims.config.models import IngestionConfig
from tiss_claims.domain import ProcessingStatus


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with a backoff schedule.

    ``retry_count`` is the number of failed attempts so far, including the
    one being handled. A return goes back to RETRY while the count is within
    ``max_retries``; past that it is parked in ERROR for manual requeue.
    """

    max_retries: int = 3
    backoff_seconds: tuple[int, ...] = field(default=(30, 120, 600))

    @classmethod
    def from_config(cls, config: IngestionConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            backoff_seconds=tuple(config.backoff_seconds),
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count <= self.max_retries

    def delay_for(self, retry_count: int) -> timedelta:
        """Backoff before attempt ``retry_count + 1``; the last step repeats."""
        if not self.backoff_seconds:
            return timedelta(0)
        index = min(max(retry_count, 1), len(self.backoff_seconds)) - 1
        return timedelta(seconds=self.backoff_seconds[index])

    def next_state(self, retry_count: int, now: datetime) -> tuple[ProcessingStatus, datetime | None]:
        """Status and next attempt time after a failed attempt."""
        if self.should_retry(retry_count):
            return ProcessingStatus.RETRY, now + self.delay_for(retry_count)
        return ProcessingStatus.ERROR, None
