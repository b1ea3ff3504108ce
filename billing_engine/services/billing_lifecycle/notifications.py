"""Billing notification outbox."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_engine.models.notification import ScheduledNotification
from billing_engine.schemas.billing_lifecycle import ScheduledNotificationCreate
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class NotificationScheduler:
    """Persists notification intents for the delivery worker.

    Delivery is at-least-once: rows are never deduplicated here and the
    delivery side marks them sent once handed off.
    """

    @staticmethod
    def schedule(db: Session, payload: ScheduledNotificationCreate) -> ScheduledNotification:
        notification = ScheduledNotification(
            notification_type=payload.notification_type,
            tenant_id=payload.tenant_id,
            subscription_id=payload.subscription_id,
            billing_cycle_id=payload.billing_cycle_id,
            invoice_id=payload.invoice_id,
            payment_id=payload.payment_id,
            scheduled_for=payload.scheduled_for,
            metadata_=payload.metadata,
        )
        db.add(notification)
        db.flush()
        logger.info(
            f"Scheduled {payload.notification_type.value} notification for tenant "
            f"{payload.tenant_id} at {payload.scheduled_for.isoformat()}"
        )
        return notification

    @staticmethod
    def schedule_many(
        db: Session, payloads: Iterable[ScheduledNotificationCreate]
    ) -> list[ScheduledNotification]:
        return [NotificationScheduler.schedule(db, payload) for payload in payloads]

    @staticmethod
    def list_due(
        db: Session, now: datetime | None = None, limit: int = 100
    ) -> list[ScheduledNotification]:
        now = now or datetime.now(timezone.utc)
        return list(
            db.scalars(
                select(ScheduledNotification)
                .where(ScheduledNotification.sent.is_(False))
                .where(ScheduledNotification.scheduled_for <= now)
                .order_by(ScheduledNotification.scheduled_for)
                .limit(limit)
            ).all()
        )

    @staticmethod
    def mark_sent(db: Session, notification_id, sent_at: datetime | None = None) -> bool:
        sent_at = sent_at or datetime.now(timezone.utc)
        result = db.execute(
            update(ScheduledNotification)
            .where(ScheduledNotification.id == coerce_uuid(notification_id))
            .where(ScheduledNotification.sent.is_(False))
            .values(sent=True, sent_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount > 0
