"""Billing reports for a tenant over a date range."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.models.billing import Invoice, InvoiceStatus, OverageBilling
from billing_engine.schemas.billing_lifecycle import (
    BillingReportInvoice,
    BillingReportResponse,
)
from billing_engine.services.common import as_utc, round_money

logger = logging.getLogger(__name__)

FAILED_INVOICE_STATUSES = (InvoiceStatus.uncollectible, InvoiceStatus.void)


class BillingReports:
    """Service for tenant billing reports."""

    @staticmethod
    def generate(
        db: Session, tenant_id: str, start: datetime, end: datetime
    ) -> BillingReportResponse:
        """Summarise invoices and overages created between ``start`` and ``end``.

        Returns:
            BillingReportResponse with:
            - total_revenue: sum of amount_paid over paid invoices
            - invoices_generated: invoices created in the range
            - payment_success_rate: paid invoices as a percentage of those
            - overage_charges: pre-tax overage usage recorded in the range
            - failed_payments: uncollectible or void invoices
            - invoices: per-invoice breakdown, oldest first
        """
        start = as_utc(start)
        end = as_utc(end)
        if end < start:
            raise ValueError("Report end must not be before its start")

        invoices = list(
            db.scalars(
                select(Invoice)
                .where(Invoice.tenant_id == tenant_id)
                .where(Invoice.created_at >= start)
                .where(Invoice.created_at <= end)
                .order_by(Invoice.created_at, Invoice.invoice_number)
            ).all()
        )
        overages = db.scalars(
            select(OverageBilling)
            .where(OverageBilling.tenant_id == tenant_id)
            .where(OverageBilling.created_at >= start)
            .where(OverageBilling.created_at <= end)
        ).all()

        total_revenue = Decimal("0.00")
        paid_count = 0
        failed_count = 0
        for invoice in invoices:
            if invoice.status == InvoiceStatus.paid:
                total_revenue += Decimal(str(invoice.amount_paid or 0))
                paid_count += 1
            elif invoice.status in FAILED_INVOICE_STATUSES:
                failed_count += 1

        overage_charges = sum(
            (
                Decimal(str(overage.overage_amount or 0)) * Decimal(str(overage.unit_price or 0))
                for overage in overages
            ),
            Decimal("0"),
        )
        success_rate = round(paid_count / len(invoices) * 100, 2) if invoices else 0.0

        logger.info(
            f"Billing report for tenant {tenant_id}: {len(invoices)} invoices, "
            f"{paid_count} paid, {failed_count} failed"
        )
        return BillingReportResponse(
            tenant_id=tenant_id,
            period_start=start,
            period_end=end,
            total_revenue=round_money(total_revenue),
            invoices_generated=len(invoices),
            payment_success_rate=success_rate,
            overage_charges=round_money(overage_charges),
            failed_payments=failed_count,
            invoices=[BillingReportInvoice.model_validate(invoice) for invoice in invoices],
        )
