"""Tests for the payment retry schedule."""

from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.services.billing_lifecycle import PermanentFailure, RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy delays and exhaustion."""

    def test_default_schedule(self):
        policy = RetryPolicy()
        assert [policy.delay_hours(n) for n in (1, 2, 3)] == [24, 72, 168]
        assert policy.delay_hours(4) is None

    def test_exhausted_only_past_max_retries(self):
        policy = RetryPolicy([24, 72, 168], max_retries=3)
        assert not policy.is_exhausted(3)
        assert policy.is_exhausted(4)

    def test_counts_past_table_reuse_last_interval(self):
        policy = RetryPolicy([1, 2], max_retries=5)
        assert [policy.delay_hours(n) for n in range(1, 6)] == [1, 2, 2, 2, 2]
        assert policy.delay_hours(6) is None

    def test_delays_never_decrease(self):
        policy = RetryPolicy([24, 72, 168], max_retries=6)
        delays = [policy.delay_hours(n) for n in range(1, 7)]
        assert delays == sorted(delays)

    def test_next_retry_at(self):
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        policy = RetryPolicy()
        assert policy.next_retry_at(2, now) == now + timedelta(hours=72)
        assert policy.next_retry_at(4, now) is None

    def test_zero_max_retries_exhausts_on_first_failure(self):
        policy = RetryPolicy([24], max_retries=0)
        assert policy.delay(1) is None

    def test_schedule_returns_next_attempt(self):
        policy = RetryPolicy([24, 72, 168], max_retries=3)
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert policy.schedule(3, now) == now + timedelta(hours=168)

    def test_schedule_raises_permanent_failure_when_exhausted(self):
        policy = RetryPolicy([24, 72, 168], max_retries=3)
        with pytest.raises(PermanentFailure, match="after 4 failed attempts"):
            policy.schedule(4, datetime(2024, 2, 1, tzinfo=timezone.utc))

    def test_retry_count_starts_at_one(self):
        with pytest.raises(ValueError):
            RetryPolicy().delay_hours(0)

    @pytest.mark.parametrize(
        "intervals",
        [[], [0, 24], [-1], [72, 24]],
    )
    def test_invalid_tables_rejected(self, intervals):
        with pytest.raises(ValueError):
            RetryPolicy(intervals)

    def test_negative_max_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
