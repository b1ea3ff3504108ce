"""Retention cleanup for finished billing records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from billing_engine.models.billing_cycle import TERMINAL_CYCLE_STATUSES, BillingCycle
from billing_engine.models.notification import ScheduledNotification

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    cycles_purged: int = 0
    notifications_purged: int = 0


class CleanupJob:
    """Purges terminal cycles and delivered notifications past retention.

    Only succeeded and exhausted cycles are eligible; scheduled, in_progress
    and awaiting_retry cycles are kept regardless of age.
    """

    def __init__(self, retention_days: int = 365):
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        self.retention_days = retention_days

    def run(self, db: Session, now: datetime) -> CleanupResult:
        cutoff = now - timedelta(days=self.retention_days)
        cycles = db.execute(
            delete(BillingCycle)
            .where(BillingCycle.status.in_(TERMINAL_CYCLE_STATUSES))
            .where(BillingCycle.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        notifications = db.execute(
            delete(ScheduledNotification)
            .where(ScheduledNotification.sent.is_(True))
            .where(ScheduledNotification.sent_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        result = CleanupResult(
            cycles_purged=cycles.rowcount or 0,
            notifications_purged=notifications.rowcount or 0,
        )
        logger.info(
            f"Billing cleanup removed {result.cycles_purged} cycles and "
            f"{result.notifications_purged} notifications older than {cutoff.date().isoformat()}"
        )
        return result
