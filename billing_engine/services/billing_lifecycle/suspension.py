"""Subscription suspension after payment retries run out."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from billing_engine.models.notification import BillingNotificationType
from billing_engine.schemas.billing_lifecycle import ScheduledNotificationCreate
from billing_engine.services.billing_lifecycle.interfaces import (
    SubscriptionProvider,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)


class SubscriptionSuspensionHandler:
    def __init__(self, provider: SubscriptionProvider):
        self.provider = provider

    def suspend(
        self,
        db: Session,
        subscription: SubscriptionSnapshot,
        reason: str,
        now: datetime,
        *,
        billing_cycle_id=None,
        invoice_id=None,
    ) -> ScheduledNotificationCreate | None:
        """Suspend the subscription and return the cancellation notice.

        Returns None when the subscription was already suspended, in which
        case nothing is emitted.
        """
        if not self.provider.suspend(db, subscription.id, reason):
            logger.info(f"Subscription {subscription.id} already suspended; no-op")
            return None
        logger.warning(f"Suspended subscription {subscription.id} for tenant {subscription.tenant_id}: {reason}")
        return ScheduledNotificationCreate(
            notification_type=BillingNotificationType.subscription_cancelled,
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            billing_cycle_id=billing_cycle_id,
            invoice_id=invoice_id,
            scheduled_for=now,
            metadata={"reason": reason, "plan_name": subscription.plan_name},
        )
