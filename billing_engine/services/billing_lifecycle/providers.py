"""Database-backed subscription provider and invoice generator."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_engine.models.billing import Invoice, InvoiceKind, InvoiceLineType
from billing_engine.models.subscription import SubscriptionStatus, TenantSubscription
from billing_engine.services.billing_lifecycle.interfaces import SubscriptionSnapshot
from billing_engine.services.billing_lifecycle.invoices import Invoices, LineItem
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def _snapshot(subscription: TenantSubscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=subscription.id,
        tenant_id=subscription.tenant_id,
        plan_name=subscription.plan_name,
        plan_price=Decimal(str(subscription.plan_price or Decimal("0.00"))),
        currency=subscription.currency,
        billing_interval=subscription.billing_interval,
        status=subscription.status,
        customer_id=subscription.customer_id,
        payment_provider=subscription.payment_provider,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
    )


class DbSubscriptionProvider:
    @staticmethod
    def get(db: Session, tenant_id: str) -> SubscriptionSnapshot | None:
        """Return the tenant's current (non-cancelled) subscription."""
        subscription = db.scalars(
            select(TenantSubscription)
            .where(TenantSubscription.tenant_id == tenant_id)
            .where(TenantSubscription.status != SubscriptionStatus.cancelled)
            .order_by(TenantSubscription.created_at.desc())
            .limit(1)
        ).first()
        if not subscription:
            return None
        return _snapshot(subscription)

    @staticmethod
    def suspend(db: Session, subscription_id: uuid.UUID, reason: str) -> bool:
        """Suspend an active subscription.

        Returns False when the subscription was not active (already suspended
        or cancelled), True when this call suspended it.
        """
        now = datetime.now(timezone.utc)
        result = db.execute(
            update(TenantSubscription)
            .where(TenantSubscription.id == coerce_uuid(subscription_id))
            .where(TenantSubscription.status == SubscriptionStatus.active)
            .values(
                status=SubscriptionStatus.suspended,
                suspended_at=now,
                suspension_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @staticmethod
    def list_active(db: Session) -> list[SubscriptionSnapshot]:
        rows = db.scalars(
            select(TenantSubscription)
            .where(TenantSubscription.status == SubscriptionStatus.active)
            .order_by(TenantSubscription.tenant_id)
        ).all()
        return [_snapshot(row) for row in rows]


class SubscriptionInvoiceGenerator:
    """Invoices one billing period at the subscription's plan price."""

    def __init__(self, tax_rate: Decimal = Decimal("0.00"), due_days: int = 14):
        self.tax_rate = tax_rate
        self.due_days = due_days

    def generate(
        self,
        db: Session,
        tenant_id: str,
        subscription: SubscriptionSnapshot,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice:
        now = datetime.now(timezone.utc)
        description = (
            f"{subscription.plan_name} ({period_start:%Y-%m-%d} to {period_end:%Y-%m-%d})"
        )
        return Invoices.create(
            db,
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            currency=subscription.currency,
            lines=[
                LineItem(
                    description=description,
                    quantity=Decimal("1"),
                    unit_price=subscription.plan_price,
                    line_type=InvoiceLineType.subscription,
                )
            ],
            tax_rate=self.tax_rate,
            issued_at=now,
            due_at=now + timedelta(days=self.due_days),
            kind=InvoiceKind.subscription,
            period_start=period_start,
            period_end=period_end,
        )
