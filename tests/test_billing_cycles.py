"""Tests for the billing cycle processor state machine."""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from billing_engine.models import (
    BillingCycle,
    BillingCycleStatus,
    BillingInterval,
    BillingNotificationType,
    FailureKind,
    Invoice,
    InvoiceStatus,
    ScheduledNotification,
    SubscriptionStatus,
    TenantSubscription,
)
from billing_engine.services.billing_lifecycle import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    Invoices,
    LineItem,
    release_stale_claims,
    validate_transition,
)
from billing_engine.services.billing_lifecycle.cycles import transition
from billing_engine.services.common import as_utc
from tests.mocks import approved, declined


def _notification_types(db_session, cycle_id=None):
    query = db_session.query(ScheduledNotification)
    if cycle_id is not None:
        query = query.filter(ScheduledNotification.billing_cycle_id == cycle_id)
    return [n.notification_type for n in query.all()]


# =============================================================================
# Transition Guard Tests
# =============================================================================


class TestTransitions:
    """Tests for the allowed status graph."""

    def test_allowed_transitions(self):
        validate_transition(BillingCycleStatus.scheduled, BillingCycleStatus.in_progress)
        validate_transition(BillingCycleStatus.in_progress, BillingCycleStatus.succeeded)
        validate_transition(BillingCycleStatus.in_progress, BillingCycleStatus.awaiting_retry)
        validate_transition(BillingCycleStatus.in_progress, BillingCycleStatus.exhausted)
        validate_transition(BillingCycleStatus.awaiting_retry, BillingCycleStatus.in_progress)

    @pytest.mark.parametrize(
        "current,new",
        [
            (BillingCycleStatus.scheduled, BillingCycleStatus.succeeded),
            (BillingCycleStatus.scheduled, BillingCycleStatus.exhausted),
            (BillingCycleStatus.awaiting_retry, BillingCycleStatus.succeeded),
            (BillingCycleStatus.succeeded, BillingCycleStatus.in_progress),
            (BillingCycleStatus.exhausted, BillingCycleStatus.in_progress),
            (BillingCycleStatus.exhausted, BillingCycleStatus.awaiting_retry),
        ],
    )
    def test_rejected_transitions(self, current, new):
        with pytest.raises(InvalidTransitionError):
            validate_transition(current, new)

    def test_terminal_states_have_no_exits(self):
        assert VALID_TRANSITIONS[BillingCycleStatus.succeeded] == set()
        assert VALID_TRANSITIONS[BillingCycleStatus.exhausted] == set()

    def test_transition_leaves_status_on_rejection(self):
        cycle = BillingCycle(status=BillingCycleStatus.succeeded)
        with pytest.raises(InvalidTransitionError):
            transition(cycle, BillingCycleStatus.awaiting_retry)
        assert cycle.status == BillingCycleStatus.succeeded


# =============================================================================
# Success Path Tests
# =============================================================================


class TestSuccessfulCycle:
    """Tests for a cycle whose first payment attempt succeeds."""

    def test_success_pays_invoice_and_schedules_next_cycle(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        """January cycle succeeds; next cycle covers leap-year February."""
        gateway.default = approved("pay_jan")
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        assert result.outcome == "succeeded"
        assert result.status == BillingCycleStatus.succeeded
        assert result.payment_id == "pay_jan"

        invoice = db_session.get(Invoice, result.invoice_id)
        assert invoice.status == InvoiceStatus.paid
        assert invoice.total == Decimal("49.00")
        assert invoice.amount_paid == Decimal("49.00")
        assert invoice.amount_due == Decimal("0.00")
        assert invoice.paid_at is not None

        next_cycle = db_session.get(BillingCycle, result.next_cycle_id)
        assert next_cycle.status == BillingCycleStatus.scheduled
        assert next_cycle.retry_count == 0
        assert as_utc(next_cycle.cycle_start) == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert as_utc(next_cycle.cycle_end) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_success_emits_notifications(
        self, db_session, processor, subscription, make_cycle
    ):
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        types = [n.notification_type for n in result.notifications]
        assert BillingNotificationType.invoice_generated in types
        assert BillingNotificationType.payment_succeeded in types
        assert BillingNotificationType.upcoming_payment in types
        persisted = _notification_types(db_session)
        assert sorted(t.value for t in persisted) == sorted(t.value for t in types)

        upcoming = (
            db_session.query(ScheduledNotification)
            .filter(
                ScheduledNotification.notification_type
                == BillingNotificationType.upcoming_payment
            )
            .one()
        )
        assert upcoming.billing_cycle_id == result.next_cycle_id
        assert as_utc(upcoming.scheduled_for) == datetime(2024, 2, 22, tzinfo=timezone.utc)

    def test_upcoming_notice_skipped_when_in_past(
        self, db_session, processor, clock, subscription, make_cycle
    ):
        """A long-overdue cycle does not schedule a reminder in the past."""
        clock.current = datetime(2024, 3, 28, tzinfo=timezone.utc)
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        types = [n.notification_type for n in result.notifications]
        assert BillingNotificationType.upcoming_payment not in types

    def test_gateway_receives_invoice_amount_and_key(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        assert len(gateway.calls) == 1
        call = gateway.calls[0]
        assert call["idempotency_key"] == f"invoice_{result.invoice_id}"
        assert call["amount"] == Decimal("49.00")
        assert call["currency"] == "USD"
        assert call["customer_id"] == "cus_123"
        assert call["metadata"]["billing_cycle_id"] == str(cycle.id)


# =============================================================================
# Retry and Exhaustion Tests
# =============================================================================


class TestRetries:
    """Tests for failed payments and the retry schedule."""

    def test_four_failures_exhaust_and_suspend(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.default = declined("card_declined")
        cycle = make_cycle(subscription)

        first = processor.process(db_session, cycle.id)
        assert first.status == BillingCycleStatus.awaiting_retry
        assert first.retry_count == 1
        assert first.next_retry_at == clock() + timedelta(hours=24)

        clock.current = first.next_retry_at
        second = processor.process(db_session, cycle.id)
        assert second.status == BillingCycleStatus.awaiting_retry
        assert second.retry_count == 2
        assert second.next_retry_at == clock() + timedelta(hours=72)

        clock.current = second.next_retry_at
        third = processor.process(db_session, cycle.id)
        assert third.status == BillingCycleStatus.awaiting_retry
        assert third.retry_count == 3
        assert third.next_retry_at == clock() + timedelta(hours=168)

        clock.current = third.next_retry_at
        fourth = processor.process(db_session, cycle.id)
        assert fourth.status == BillingCycleStatus.exhausted
        assert fourth.retry_count == 4
        assert fourth.next_retry_at is None

        invoice = db_session.get(Invoice, fourth.invoice_id)
        assert invoice.status == InvoiceStatus.uncollectible
        assert invoice.memo.startswith("Payment retries exhausted after 4 failed attempts")

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.suspended
        assert subscription.suspended_at is not None

        types = {n.notification_type for n in fourth.notifications}
        assert types == {
            BillingNotificationType.subscription_cancelled,
            BillingNotificationType.billing_escalation,
        }
        assert len(gateway.calls) == 4
        assert len(set(gateway.keys)) == 1

    def test_payment_failed_notification_carries_retry_details(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.default = declined("insufficient_funds")
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        failed = [
            n
            for n in result.notifications
            if n.notification_type == BillingNotificationType.payment_failed
        ]
        assert len(failed) == 1
        assert failed[0].metadata["retry_count"] == 1
        assert failed[0].metadata["failure_reason"] == "insufficient_funds"
        assert failed[0].metadata["next_retry_at"] == (
            clock() + timedelta(hours=24)
        ).isoformat()

    def test_retry_not_claimed_before_next_retry_at(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.default = declined()
        cycle = make_cycle(subscription)
        first = processor.process(db_session, cycle.id)

        clock.current = first.next_retry_at - timedelta(hours=1)
        early = processor.process(db_session, cycle.id)

        assert early.skipped
        assert len(gateway.calls) == 1

    def test_retry_reuses_open_invoice(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.outcomes = [declined(), approved("pay_retry")]
        cycle = make_cycle(subscription)

        first = processor.process(db_session, cycle.id)
        clock.current = first.next_retry_at
        second = processor.process(db_session, cycle.id)

        assert second.status == BillingCycleStatus.succeeded
        assert second.invoice_id == first.invoice_id
        assert gateway.keys[0] == gateway.keys[1]
        assert db_session.query(Invoice).count() == 1
        generated = [
            t
            for t in _notification_types(db_session, cycle.id)
            if t == BillingNotificationType.invoice_generated
        ]
        assert len(generated) == 1

    def test_retry_count_never_decreases(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.outcomes = [declined(), declined(), approved()]
        cycle = make_cycle(subscription)
        counts = []
        for _ in range(3):
            result = processor.process(db_session, cycle.id)
            counts.append(result.retry_count)
            if result.next_retry_at:
                clock.current = result.next_retry_at

        assert counts == sorted(counts)
        assert counts[-1] == 2

    def test_paid_invoice_short_circuits_gateway(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        """A retry after a crash that followed a successful charge does not charge again."""
        now = clock()
        invoice = Invoices.create(
            db_session,
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            currency="USD",
            lines=[LineItem("Pro", Decimal("1"), Decimal("49.00"))],
            tax_rate=Decimal("0"),
            issued_at=now,
            due_at=now + timedelta(days=14),
        )
        Invoices.mark_paid(db_session, invoice, payment_id="pay_earlier", paid_at=now)
        db_session.commit()
        cycle = make_cycle(
            subscription,
            status=BillingCycleStatus.awaiting_retry,
            retry_count=1,
            next_retry_at=now - timedelta(hours=1),
            invoice_id=invoice.id,
        )

        result = processor.process(db_session, cycle.id)

        assert result.status == BillingCycleStatus.succeeded
        assert result.payment_id == "pay_earlier"
        assert gateway.calls == []


# =============================================================================
# Data Integrity Tests
# =============================================================================


class TestDataIntegrityFailures:
    """Tests for fail-fast handling of missing billing configuration."""

    def test_missing_customer_exhausts_without_retry(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        subscription.customer_id = None
        db_session.commit()
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        assert result.status == BillingCycleStatus.exhausted
        assert result.retry_count == 0
        assert "no payment customer" in result.error
        stored = db_session.get(BillingCycle, cycle.id)
        assert stored.failure_kind == FailureKind.data_integrity
        assert gateway.calls == []

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.active

        escalation = [
            n
            for n in result.notifications
            if n.notification_type == BillingNotificationType.billing_escalation
        ]
        assert len(escalation) == 1
        assert escalation[0].metadata["recipients"] == ["billing@company.com"]
        assert escalation[0].metadata["failure_kind"] == "data_integrity"

    def test_missing_subscription_exhausts(self, db_session, processor, subscription, make_cycle):
        cycle = make_cycle(subscription, tenant_id="tenant-without-subscription")

        result = processor.process(db_session, cycle.id)

        assert result.status == BillingCycleStatus.exhausted
        assert result.invoice_id is None
        assert "No subscription found" in result.error

    def test_non_retryable_decline_fails_fast(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        gateway.default = declined("customer_not_found", retryable=False)
        cycle = make_cycle(subscription)

        result = processor.process(db_session, cycle.id)

        assert result.status == BillingCycleStatus.exhausted
        assert result.retry_count == 0
        invoice = db_session.get(Invoice, result.invoice_id)
        assert invoice.status == InvoiceStatus.uncollectible


# =============================================================================
# Claim Tests
# =============================================================================


class TestClaims:
    """Tests for the atomic claim guarding concurrent processing."""

    def test_reentrant_call_results_in_single_gateway_call(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        cycle = make_cycle(subscription)
        nested = []
        gateway.on_attempt = lambda key: nested.append(processor.process(db_session, cycle.id))

        result = processor.process(db_session, cycle.id)

        assert result.status == BillingCycleStatus.succeeded
        assert len(nested) == 1
        assert nested[0].skipped
        assert len(gateway.calls) == 1

    def test_concurrent_sessions_result_in_single_gateway_call(
        self, file_engine, processor, gateway
    ):
        factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
        with factory() as setup:
            subscription = TenantSubscription(
                tenant_id="tenant-concurrent",
                plan_name="Pro",
                plan_price=Decimal("49.00"),
                currency="USD",
                billing_interval=BillingInterval.monthly,
                status=SubscriptionStatus.active,
                customer_id="cus_123",
            )
            setup.add(subscription)
            setup.flush()
            cycle = BillingCycle(
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                cycle_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
                cycle_end=datetime(2024, 1, 31, tzinfo=timezone.utc),
                status=BillingCycleStatus.scheduled,
                retry_count=0,
            )
            setup.add(cycle)
            setup.commit()
            cycle_id = cycle.id

        barrier = threading.Barrier(2)
        results = []
        errors = []

        def worker():
            session = factory()
            try:
                barrier.wait(timeout=10)
                results.append(processor.process(session, cycle_id))
            except Exception as exc:
                errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert sorted(result.outcome for result in results) == ["skipped", "succeeded"]
        assert len(gateway.calls) == 1

    def test_second_sequential_call_is_skipped(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        cycle = make_cycle(subscription)

        processor.process(db_session, cycle.id)
        again = processor.process(db_session, cycle.id)

        assert again.skipped
        assert len(gateway.calls) == 1

    def test_cycle_not_yet_ended_is_skipped(
        self, db_session, processor, gateway, subscription, make_cycle
    ):
        cycle = make_cycle(
            subscription,
            cycle_start=datetime(2024, 2, 1, tzinfo=timezone.utc),
            cycle_end=datetime(2024, 2, 29, tzinfo=timezone.utc),
        )

        result = processor.process(db_session, cycle.id)

        assert result.skipped
        assert db_session.get(BillingCycle, cycle.id).status == BillingCycleStatus.scheduled

    def test_unexpected_error_leaves_claim_for_release(
        self, db_session, processor, gateway, clock, subscription, make_cycle
    ):
        gateway.outcomes = [RuntimeError("gateway client bug"), approved("pay_after_crash")]
        cycle = make_cycle(subscription)

        with pytest.raises(RuntimeError):
            processor.process(db_session, cycle.id)

        stored = db_session.get(BillingCycle, cycle.id)
        assert stored.status == BillingCycleStatus.in_progress
        assert stored.invoice_id is not None
        invoice_id = stored.invoice_id

        released = release_stale_claims(db_session, clock() + timedelta(minutes=31), 30)
        assert released == 1
        stored = db_session.get(BillingCycle, cycle.id)
        assert stored.status == BillingCycleStatus.awaiting_retry
        assert stored.retry_count == 0

        clock.advance(minutes=31)
        result = processor.process(db_session, cycle.id)
        assert result.status == BillingCycleStatus.succeeded
        assert result.invoice_id == invoice_id
        assert gateway.keys[0] == gateway.keys[1]
