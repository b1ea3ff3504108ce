"""Invoice creation and settlement for the billing engine.

These helpers only flush; the caller owns the transaction so invoice changes
commit together with the billing cycle state they belong to.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    Invoice,
    InvoiceKind,
    InvoiceLine,
    InvoiceLineType,
    InvoiceStatus,
)
from billing_engine.services.billing_lifecycle.errors import InvoiceStateError
from billing_engine.services.common import round_money

logger = logging.getLogger(__name__)


@dataclass
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_type: InvoiceLineType = InvoiceLineType.subscription
    overage_id: uuid.UUID | None = None

    @property
    def amount(self) -> Decimal:
        return round_money(Decimal(str(self.quantity)) * Decimal(str(self.unit_price)))


def _invoice_number(kind: InvoiceKind, issued_at: datetime) -> str:
    prefix = "OVR" if kind == InvoiceKind.overage else "INV"
    return f"{prefix}-{issued_at:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class Invoices:
    @staticmethod
    def create(
        db: Session,
        *,
        tenant_id: str,
        subscription_id: uuid.UUID,
        currency: str,
        lines: list[LineItem],
        tax_rate: Decimal,
        issued_at: datetime,
        due_at: datetime,
        kind: InvoiceKind = InvoiceKind.subscription,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        memo: str | None = None,
    ) -> Invoice:
        """Create an open invoice with line items and computed totals.

        Tax is applied once to the rounded subtotal.
        """
        subtotal = round_money(sum((line.amount for line in lines), Decimal("0.00")))
        tax_total = round_money(subtotal * Decimal(str(tax_rate)))
        total = round_money(subtotal + tax_total)

        invoice = Invoice(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            invoice_number=_invoice_number(kind, issued_at),
            kind=kind,
            status=InvoiceStatus.open,
            currency=currency,
            subtotal=subtotal,
            tax_total=tax_total,
            total=total,
            amount_paid=Decimal("0.00"),
            amount_due=total,
            period_start=period_start,
            period_end=period_end,
            due_at=due_at,
            memo=memo,
            created_at=issued_at,
        )
        db.add(invoice)
        db.flush()
        for position, item in enumerate(lines):
            db.add(
                InvoiceLine(
                    invoice_id=invoice.id,
                    overage_id=item.overage_id,
                    line_type=item.line_type,
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    amount=item.amount,
                )
            )
        db.flush()
        logger.info(
            f"Created {kind.value} invoice {invoice.invoice_number} for tenant {tenant_id}: "
            f"total {total} {currency}"
        )
        return invoice

    @staticmethod
    def mark_paid(
        db: Session,
        invoice: Invoice,
        *,
        payment_id: str | None,
        paid_at: datetime,
        payment_provider: str | None = None,
    ) -> Invoice:
        if invoice.status == InvoiceStatus.paid:
            return invoice
        if invoice.status != InvoiceStatus.open:
            raise InvoiceStateError(
                f"Invoice {invoice.id} is {invoice.status.value} and cannot be paid"
            )
        invoice.status = InvoiceStatus.paid
        invoice.amount_paid = invoice.total
        invoice.amount_due = Decimal("0.00")
        invoice.paid_at = paid_at
        invoice.payment_id = payment_id
        if payment_provider:
            invoice.payment_provider = payment_provider
        db.flush()
        return invoice

    @staticmethod
    def mark_uncollectible(db: Session, invoice: Invoice, memo: str | None = None) -> Invoice:
        if invoice.status == InvoiceStatus.uncollectible:
            return invoice
        if invoice.status != InvoiceStatus.open:
            raise InvoiceStateError(
                f"Invoice {invoice.id} is {invoice.status.value} and cannot be written off"
            )
        invoice.status = InvoiceStatus.uncollectible
        if memo:
            invoice.memo = memo
        db.flush()
        return invoice

    @staticmethod
    def void(db: Session, invoice: Invoice, memo: str | None = None) -> Invoice:
        if invoice.status == InvoiceStatus.void:
            return invoice
        if invoice.status != InvoiceStatus.open:
            raise InvoiceStateError(
                f"Invoice {invoice.id} is {invoice.status.value} and cannot be voided"
            )
        invoice.status = InvoiceStatus.void
        invoice.amount_due = Decimal("0.00")
        if memo:
            invoice.memo = memo
        db.flush()
        return invoice
