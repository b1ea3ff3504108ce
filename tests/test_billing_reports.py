"""Tests for tenant billing reports."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_engine.models import InvoiceKind, InvoiceStatus
from billing_engine.services.billing_lifecycle import BillingReports, Invoices, LineItem

JAN_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
JAN_END = datetime(2024, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


def _invoice(db_session, subscription, issued_at, amount="49.00", tenant_id=None, kind=None):
    invoice = Invoices.create(
        db_session,
        tenant_id=tenant_id or subscription.tenant_id,
        subscription_id=subscription.id,
        currency="USD",
        lines=[LineItem(description="Pro", quantity=Decimal("1"), unit_price=Decimal(amount))],
        tax_rate=Decimal("0"),
        issued_at=issued_at,
        due_at=issued_at + timedelta(days=14),
        kind=kind or InvoiceKind.subscription,
    )
    db_session.commit()
    return invoice


class TestBillingReports:
    """Tests for BillingReports.generate."""

    def test_summarises_invoices_in_range(self, db_session, subscription, make_overage):
        paid = _invoice(db_session, subscription, datetime(2024, 1, 5, tzinfo=timezone.utc))
        Invoices.mark_paid(
            db_session, paid, payment_id="pay_1", paid_at=datetime(2024, 1, 6, tzinfo=timezone.utc)
        )
        _invoice(db_session, subscription, datetime(2024, 1, 20, tzinfo=timezone.utc))
        written_off = _invoice(
            db_session, subscription, datetime(2024, 1, 25, tzinfo=timezone.utc), amount="10.00"
        )
        Invoices.mark_uncollectible(db_session, written_off)
        voided = _invoice(
            db_session,
            subscription,
            datetime(2024, 1, 28, tzinfo=timezone.utc),
            amount="5.00",
            kind=InvoiceKind.overage,
        )
        Invoices.void(db_session, voided)
        db_session.commit()
        make_overage(
            subscription,
            overage_amount=Decimal("1000"),
            unit_price=Decimal("0.001"),
            created_at=datetime(2024, 1, 10, tzinfo=timezone.utc),
        )

        report = BillingReports.generate(db_session, subscription.tenant_id, JAN_START, JAN_END)

        assert report.invoices_generated == 4
        assert report.total_revenue == Decimal("49.00")
        assert report.payment_success_rate == 25.0
        assert report.failed_payments == 2
        assert report.overage_charges == Decimal("1.00")
        assert [line.status for line in report.invoices] == [
            InvoiceStatus.paid,
            InvoiceStatus.open,
            InvoiceStatus.uncollectible,
            InvoiceStatus.void,
        ]
        assert report.invoices[0].amount_paid == Decimal("49.00")

    def test_half_paid_success_rate(self, db_session, subscription):
        paid = _invoice(db_session, subscription, datetime(2024, 1, 1, tzinfo=timezone.utc))
        Invoices.mark_paid(db_session, paid, payment_id="pay_1", paid_at=JAN_START)
        db_session.commit()
        _invoice(db_session, subscription, datetime(2024, 1, 15, tzinfo=timezone.utc))

        report = BillingReports.generate(db_session, subscription.tenant_id, JAN_START, JAN_END)

        assert report.invoices_generated == 2
        assert report.payment_success_rate == 50.0

    def test_excludes_other_periods_and_tenants(self, db_session, subscription, make_overage):
        _invoice(db_session, subscription, datetime(2024, 2, 15, tzinfo=timezone.utc))
        _invoice(
            db_session,
            subscription,
            datetime(2024, 1, 10, tzinfo=timezone.utc),
            tenant_id="someone-else",
        )
        make_overage(subscription, created_at=datetime(2024, 2, 2, tzinfo=timezone.utc))

        report = BillingReports.generate(db_session, subscription.tenant_id, JAN_START, JAN_END)

        assert report.invoices_generated == 0
        assert report.overage_charges == Decimal("0.00")
        assert report.invoices == []

    def test_tenant_without_billing_history(self, db_session):
        report = BillingReports.generate(db_session, "tenant-new", JAN_START, JAN_END)
        assert report.total_revenue == Decimal("0.00")
        assert report.payment_success_rate == 0.0
        assert report.failed_payments == 0

    def test_reversed_range_rejected(self, db_session, subscription):
        with pytest.raises(ValueError):
            BillingReports.generate(db_session, subscription.tenant_id, JAN_END, JAN_START)


class TestReportCommand:
    """Tests for the admin CLI report arguments."""

    def test_parse_report_args(self):
        from scripts.billing_admin import parse_args

        args = parse_args(["report", "tenant-42", "--start", "2024-01-01", "--end", "2024-01-31"])

        assert args.command == "report"
        assert args.tenant_id == "tenant-42"
        assert args.start == JAN_START
        assert args.end == datetime(2024, 1, 31, tzinfo=timezone.utc)

    def test_parse_void_args(self):
        from scripts.billing_admin import parse_args

        args = parse_args(["void-overage-invoice", "3c9d2b1e", "--memo", "No capture"])

        assert args.command == "void-overage-invoice"
        assert args.memo == "No capture"
