"""Supplemental invoicing of pending usage overages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_engine.metrics import record_overage_invoice
from billing_engine.models.billing import (
    Invoice,
    InvoiceKind,
    InvoiceLineType,
    InvoiceStatus,
    OverageBilling,
    OverageStatus,
)
from billing_engine.models.notification import BillingNotificationType
from billing_engine.schemas.billing_lifecycle import ScheduledNotificationCreate
from billing_engine.services.billing_lifecycle.errors import (
    DataIntegrityFailure,
    InvoiceStateError,
)
from billing_engine.services.billing_lifecycle.interfaces import (
    SubscriptionProvider,
    SubscriptionSnapshot,
)
from billing_engine.services.billing_lifecycle.invoices import Invoices, LineItem
from billing_engine.services.billing_lifecycle.notifications import NotificationScheduler
from billing_engine.services.billing_lifecycle.payment_attempts import PaymentAttemptExecutor
from billing_engine.services.common import as_utc, coerce_uuid

logger = logging.getLogger(__name__)

# Invoices whose rows stay bound to them until paid.
CHARGEABLE_STATUSES = (InvoiceStatus.open, InvoiceStatus.paid)


@dataclass
class OverageResult:
    tenant_id: str
    outcome: str
    rows: int = 0
    error: str | None = None
    invoice_ids: list = field(default_factory=list)

    @property
    def invoice_id(self):
        """Most recent invoice charged in this run."""
        return self.invoice_ids[-1] if self.invoice_ids else None


class OverageBiller:
    """Bills a tenant's pending overage rows on supplemental invoices.

    Rows move to ``billed`` only after their invoice is paid. Once a row is
    linked to an invoice it stays on that invoice, and every later pass
    charges it under the same idempotency key. Rows that arrive after an
    invoice was issued go on a new invoice of their own, so a charge the
    gateway may already have captured is never reissued under another key.
    """

    def __init__(
        self,
        provider: SubscriptionProvider,
        executor: PaymentAttemptExecutor,
        tax_rate: Decimal = Decimal("0.10"),
        due_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.tax_rate = tax_rate
        self.due_days = due_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def pending_overages(db: Session, tenant_id: str) -> list[OverageBilling]:
        return list(
            db.scalars(
                select(OverageBilling)
                .where(OverageBilling.tenant_id == tenant_id)
                .where(OverageBilling.status == OverageStatus.pending)
                .order_by(OverageBilling.created_at, OverageBilling.resource_type)
            ).all()
        )

    def bill_tenant(self, db: Session, tenant_id: str) -> OverageResult:
        now = as_utc(self._clock())
        overages = self.pending_overages(db, tenant_id)
        if not overages:
            return OverageResult(tenant_id=tenant_id, outcome="none")

        subscription = self.provider.get(db, tenant_id)
        if subscription is None:
            raise DataIntegrityFailure(
                f"Tenant {tenant_id} has pending overages but no subscription"
            )

        batches = self._batches(db, tenant_id, subscription, overages, now)
        db.commit()

        result = OverageResult(tenant_id=tenant_id, outcome="paid", rows=len(overages))
        for invoice, rows in batches:
            result.invoice_ids.append(invoice.id)
            try:
                payment = self.executor.execute(
                    invoice,
                    subscription,
                    purpose="overage",
                    metadata={"invoice_kind": InvoiceKind.overage.value},
                )
            except DataIntegrityFailure as exc:
                record_overage_invoice("failed")
                logger.error(f"Overage billing for tenant {tenant_id} cannot be charged: {exc}")
                result.outcome = "failed"
                result.error = str(exc)
                return result

            if not payment.success:
                record_overage_invoice("failed")
                logger.warning(
                    f"Overage payment failed for tenant {tenant_id} "
                    f"invoice {invoice.invoice_number}: {payment.error}"
                )
                result.outcome = "failed"
                result.error = payment.error
                continue

            Invoices.mark_paid(
                db,
                invoice,
                payment_id=payment.payment_id,
                paid_at=now,
                payment_provider=subscription.payment_provider,
            )
            for overage in rows:
                overage.status = OverageStatus.billed
            db.commit()
            record_overage_invoice("paid")
            logger.info(f"Marked {len(rows)} overages as billed for tenant {tenant_id}")
        return result

    @staticmethod
    def void_invoice(db: Session, invoice_id, memo: str | None = None) -> Invoice:
        """Void an open overage invoice and release its pending rows.

        Only for invoices the gateway has confirmed it never captured; the
        released rows are issued a new invoice on the next pass.
        """
        invoice = db.get(Invoice, coerce_uuid(invoice_id))
        if invoice is None:
            raise ValueError(f"Invoice {invoice_id} not found")
        if invoice.kind != InvoiceKind.overage:
            raise InvoiceStateError(f"Invoice {invoice.id} is not an overage invoice")
        Invoices.void(db, invoice, memo=memo or "Voided by operator")
        released = db.execute(
            update(OverageBilling)
            .where(OverageBilling.invoice_id == invoice.id)
            .where(OverageBilling.status == OverageStatus.pending)
            .values(invoice_id=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        logger.info(
            f"Voided overage invoice {invoice.invoice_number}; released {released} rows"
        )
        return invoice

    def _batches(
        self,
        db: Session,
        tenant_id: str,
        subscription: SubscriptionSnapshot,
        overages: list[OverageBilling],
        now: datetime,
    ) -> list[tuple[Invoice, list[OverageBilling]]]:
        """Group pending rows by the invoice that charges them.

        Rows already on an open or paid invoice keep it; the rest are issued
        one new invoice.
        """
        batches: dict = {}
        unlinked = []
        for overage in overages:
            invoice = db.get(Invoice, overage.invoice_id) if overage.invoice_id else None
            if invoice is not None and invoice.status in CHARGEABLE_STATUSES:
                batches.setdefault(invoice.id, (invoice, []))[1].append(overage)
            else:
                unlinked.append(overage)

        grouped = list(batches.values())
        if unlinked:
            invoice = self._issue_invoice(db, tenant_id, subscription, unlinked, now)
            grouped.append((invoice, unlinked))
        return grouped

    def _issue_invoice(
        self,
        db: Session,
        tenant_id: str,
        subscription: SubscriptionSnapshot,
        overages: list[OverageBilling],
        now: datetime,
    ) -> Invoice:
        starts = [as_utc(o.billing_period_start) for o in overages if o.billing_period_start]
        ends = [as_utc(o.billing_period_end) for o in overages if o.billing_period_end]
        invoice = Invoices.create(
            db,
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            currency=subscription.currency,
            lines=[
                LineItem(
                    description=f"{overage.resource_type} overage",
                    quantity=Decimal(str(overage.overage_amount)),
                    unit_price=Decimal(str(overage.unit_price)),
                    line_type=InvoiceLineType.overage,
                    overage_id=overage.id,
                )
                for overage in overages
            ],
            tax_rate=self.tax_rate,
            issued_at=now,
            due_at=now + timedelta(days=self.due_days),
            kind=InvoiceKind.overage,
            period_start=min(starts) if starts else None,
            period_end=max(ends) if ends else None,
            memo="Usage overage charges",
        )
        for overage in overages:
            overage.invoice_id = invoice.id
        NotificationScheduler.schedule(
            db,
            ScheduledNotificationCreate(
                notification_type=BillingNotificationType.invoice_generated,
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                invoice_id=invoice.id,
                scheduled_for=now,
                metadata={
                    "invoice_number": invoice.invoice_number,
                    "invoice_kind": InvoiceKind.overage.value,
                    "total": str(invoice.total),
                    "currency": invoice.currency,
                },
            ),
        )
        return invoice
