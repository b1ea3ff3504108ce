"""Escalating retry schedule for failed subscription payments."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from billing_engine.services.billing_lifecycle.errors import PermanentFailure

DEFAULT_RETRY_INTERVALS_HOURS = (24, 72, 168)  # 1 day, 3 days, 1 week
DEFAULT_MAX_RETRIES = 3


class RetryPolicy:
    """Map a retry count to the delay before the next payment attempt.

    ``retry_count`` is the number of failed attempts so far (1 after the first
    failure). Counts past the end of the interval table reuse its last entry,
    so the delay sequence never decreases. Once ``retry_count`` exceeds
    ``max_retries`` the policy reports exhaustion by returning ``None``.
    """

    def __init__(
        self,
        intervals_hours: Sequence[int] = DEFAULT_RETRY_INTERVALS_HOURS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        intervals = tuple(int(value) for value in intervals_hours)
        if not intervals:
            raise ValueError("Retry interval table cannot be empty")
        if any(value <= 0 for value in intervals):
            raise ValueError("Retry intervals must be positive")
        if any(later < earlier for earlier, later in zip(intervals, intervals[1:])):
            raise ValueError("Retry intervals must be non-decreasing")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.intervals_hours = intervals
        self.max_retries = max_retries

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count > self.max_retries

    def delay_hours(self, retry_count: int) -> int | None:
        if retry_count < 1:
            raise ValueError("retry_count starts at 1 after the first failure")
        if self.is_exhausted(retry_count):
            return None
        index = min(retry_count, len(self.intervals_hours)) - 1
        return self.intervals_hours[index]

    def delay(self, retry_count: int) -> timedelta | None:
        hours = self.delay_hours(retry_count)
        if hours is None:
            return None
        return timedelta(hours=hours)

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime | None:
        delay = self.delay(retry_count)
        if delay is None:
            return None
        return now + delay

    def schedule(self, retry_count: int, now: datetime) -> datetime:
        """Like ``next_retry_at`` but raises ``PermanentFailure`` when exhausted."""
        next_at = self.next_retry_at(retry_count, now)
        if next_at is None:
            raise PermanentFailure(
                f"Payment retries exhausted after {retry_count} failed attempts"
            )
        return next_at
