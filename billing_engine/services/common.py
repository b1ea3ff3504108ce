"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Timezone normalisation of stored datetimes
- Billing period arithmetic
- Monetary rounding
"""

from __future__ import annotations

import uuid
from calendar import monthrange
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from billing_engine.models.subscription import BillingInterval


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def as_utc(value: datetime | None) -> datetime | None:
    """Return an aware UTC datetime.

    Some backends (SQLite) hand back naive datetimes for timezone-aware
    columns; those are taken to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: datetime, interval: BillingInterval) -> datetime:
    """Return the inclusive last day of a billing period starting at ``start``.

    Args:
        start: The period start date
        interval: The billing interval (weekly, monthly, yearly)

    Returns:
        The period end date
    """
    if interval == BillingInterval.weekly:
        return start + timedelta(days=6)
    if interval == BillingInterval.yearly:
        return add_months(start, 12) - timedelta(days=1)
    # Default to monthly
    return add_months(start, 1) - timedelta(days=1)


def next_period(previous_end: datetime, interval: BillingInterval) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the period following one ending on ``previous_end``."""
    start = previous_end + timedelta(days=1)
    return start, period_end(start, interval)


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places (half up).

    Args:
        value: Monetary value to round

    Returns:
        Decimal rounded to 2 decimal places
    """
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
