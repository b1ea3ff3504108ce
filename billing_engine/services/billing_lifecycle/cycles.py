"""Billing cycle state machine.

A cycle moves ``scheduled -> in_progress -> succeeded | awaiting_retry |
exhausted`` and ``awaiting_retry -> in_progress``. Entering ``in_progress``
happens only through an atomic conditional update (the claim), so two
workers racing on one cycle produce exactly one gateway call.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.metrics import record_cycle_outcome
from billing_engine.models.billing import Invoice, InvoiceStatus
from billing_engine.models.billing_cycle import (
    ACTIVE_CYCLE_STATUSES,
    BillingCycle,
    BillingCycleStatus,
    FailureKind,
)
from billing_engine.models.notification import BillingNotificationType
from billing_engine.models.subscription import SubscriptionStatus
from billing_engine.schemas.billing_lifecycle import ScheduledNotificationCreate
from billing_engine.services.billing_lifecycle.errors import (
    DataIntegrityFailure,
    InvalidTransitionError,
    PermanentFailure,
)
from billing_engine.services.billing_lifecycle.interfaces import (
    InvoiceGenerator,
    PaymentResult,
    SubscriptionProvider,
    SubscriptionSnapshot,
)
from billing_engine.services.billing_lifecycle.invoices import Invoices
from billing_engine.services.billing_lifecycle.notifications import NotificationScheduler
from billing_engine.services.billing_lifecycle.payment_attempts import PaymentAttemptExecutor
from billing_engine.services.billing_lifecycle.retry_policy import RetryPolicy
from billing_engine.services.billing_lifecycle.suspension import SubscriptionSuspensionHandler
from billing_engine.services.common import as_utc, coerce_uuid, next_period, period_end

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: dict[BillingCycleStatus, set[BillingCycleStatus]] = {
    BillingCycleStatus.scheduled: {BillingCycleStatus.in_progress},
    BillingCycleStatus.in_progress: {
        BillingCycleStatus.succeeded,
        BillingCycleStatus.awaiting_retry,
        BillingCycleStatus.exhausted,
    },
    BillingCycleStatus.awaiting_retry: {BillingCycleStatus.in_progress},
    BillingCycleStatus.succeeded: set(),
    BillingCycleStatus.exhausted: set(),
}


def validate_transition(current: BillingCycleStatus, new: BillingCycleStatus) -> None:
    """Raise InvalidTransitionError if the status change is not allowed."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition billing cycle from {current.value} to {new.value}"
        )


def transition(cycle: BillingCycle, new_status: BillingCycleStatus) -> None:
    validate_transition(cycle.status, new_status)
    cycle.status = new_status


def _claimable(now: datetime, max_retries: int):
    return or_(
        and_(
            BillingCycle.status == BillingCycleStatus.scheduled,
            BillingCycle.cycle_end <= now,
        ),
        and_(
            BillingCycle.status == BillingCycleStatus.awaiting_retry,
            BillingCycle.next_retry_at <= now,
            BillingCycle.retry_count <= max_retries,
        ),
    )


def list_due_cycle_ids(
    db: Session, now: datetime, max_retries: int, limit: int | None = None
) -> list[uuid.UUID]:
    """Ids of cycles that are due for a payment attempt, oldest first."""
    stmt = (
        select(BillingCycle.id)
        .where(_claimable(now, max_retries))
        .order_by(BillingCycle.cycle_end, BillingCycle.created_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def release_stale_claims(db: Session, now: datetime, timeout_minutes: int) -> int:
    """Return cycles stuck in_progress past the claim timeout to awaiting_retry.

    The retry count is left unchanged; the cycle becomes due immediately.
    """
    cutoff = now - timedelta(minutes=timeout_minutes)
    result = db.execute(
        update(BillingCycle)
        .where(BillingCycle.status == BillingCycleStatus.in_progress)
        .where(BillingCycle.claimed_at < cutoff)
        .values(
            status=BillingCycleStatus.awaiting_retry,
            next_retry_at=now,
            claimed_at=None,
            failure_reason="Processing claim expired",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    released = result.rowcount or 0
    if released:
        logger.warning(f"Released {released} stale billing cycle claim(s)")
    return released


@dataclass
class CycleResult:
    """Outcome of one ``process`` call."""

    cycle_id: uuid.UUID
    outcome: str
    status: BillingCycleStatus | None = None
    retry_count: int | None = None
    next_retry_at: datetime | None = None
    invoice_id: uuid.UUID | None = None
    payment_id: str | None = None
    error: str | None = None
    next_cycle_id: uuid.UUID | None = None
    notifications: list[ScheduledNotificationCreate] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.outcome == "skipped"


class BillingCycleProcessor:
    def __init__(
        self,
        provider: SubscriptionProvider,
        invoice_generator: InvoiceGenerator,
        executor: PaymentAttemptExecutor,
        retry_policy: RetryPolicy,
        suspension_handler: SubscriptionSuspensionHandler,
        *,
        escalation_emails: Iterable[str] = (),
        upcoming_notice_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ):
        self.provider = provider
        self.invoice_generator = invoice_generator
        self.executor = executor
        self.retry_policy = retry_policy
        self.suspension_handler = suspension_handler
        self.escalation_emails = list(escalation_emails)
        self.upcoming_notice_days = upcoming_notice_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim(self, db: Session, cycle_id: uuid.UUID, now: datetime) -> BillingCycle | None:
        """Atomically move a due cycle to in_progress.

        Returns None when another worker already holds the cycle or it is not
        due; the session is left untouched in that case.
        """
        result = db.execute(
            update(BillingCycle)
            .where(BillingCycle.id == cycle_id)
            .where(_claimable(now, self.retry_policy.max_retries))
            .values(status=BillingCycleStatus.in_progress, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        db.commit()
        return db.get(BillingCycle, cycle_id, populate_existing=True)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, db: Session, cycle_id) -> CycleResult:
        cycle_id = coerce_uuid(cycle_id)
        now = self.now()
        cycle = self.claim(db, cycle_id, now)
        if cycle is None:
            logger.info(f"Billing cycle {cycle_id} not claimable; skipping")
            record_cycle_outcome("skipped")
            return CycleResult(cycle_id=cycle_id, outcome="skipped")

        try:
            result = self._run(db, cycle, now)
        except Exception:
            db.rollback()
            logger.exception(f"Billing cycle {cycle_id} failed unexpectedly; left in_progress")
            record_cycle_outcome("error")
            raise
        record_cycle_outcome(result.outcome)
        return result

    def _run(self, db: Session, cycle: BillingCycle, now: datetime) -> CycleResult:
        result = CycleResult(cycle_id=cycle.id, outcome="in_progress")
        subscription = None
        invoice = None
        try:
            subscription = self._resolve_subscription(db, cycle)
            invoice = self._resolve_invoice(db, cycle, subscription, now, result)
            # Invoice and its key are durable before the gateway sees them.
            db.commit()
            payment = self.executor.execute(
                invoice,
                subscription,
                metadata={"billing_cycle_id": str(cycle.id)},
            )
        except DataIntegrityFailure as exc:
            return self._fail_fast(db, cycle, invoice, now, str(exc), result)

        if payment.success:
            return self._succeed(db, cycle, subscription, invoice, payment, now, result)
        return self._fail(db, cycle, subscription, invoice, payment, now, result)

    def _resolve_subscription(self, db: Session, cycle: BillingCycle) -> SubscriptionSnapshot:
        subscription = self.provider.get(db, cycle.tenant_id)
        if subscription is None:
            raise DataIntegrityFailure(f"No subscription found for tenant {cycle.tenant_id}")
        if subscription.id != cycle.subscription_id:
            raise DataIntegrityFailure(
                f"Tenant {cycle.tenant_id} subscription {subscription.id} does not match "
                f"billing cycle subscription {cycle.subscription_id}"
            )
        if subscription.status != SubscriptionStatus.active:
            raise DataIntegrityFailure(
                f"Subscription {subscription.id} is {subscription.status.value}"
            )
        if subscription.plan_price is None or subscription.plan_price < 0:
            raise DataIntegrityFailure(f"Subscription {subscription.id} has no valid plan price")
        return subscription

    def _resolve_invoice(
        self,
        db: Session,
        cycle: BillingCycle,
        subscription: SubscriptionSnapshot,
        now: datetime,
        result: CycleResult,
    ) -> Invoice:
        if cycle.invoice_id:
            existing = db.get(Invoice, cycle.invoice_id)
            if existing and existing.status in (InvoiceStatus.open, InvoiceStatus.paid):
                return existing

        invoice = self.invoice_generator.generate(
            db, cycle.tenant_id, subscription, cycle.cycle_start, cycle.cycle_end
        )
        cycle.invoice_id = invoice.id
        notice = ScheduledNotificationCreate(
            notification_type=BillingNotificationType.invoice_generated,
            tenant_id=cycle.tenant_id,
            subscription_id=cycle.subscription_id,
            billing_cycle_id=cycle.id,
            invoice_id=invoice.id,
            scheduled_for=now,
            metadata={
                "invoice_number": invoice.invoice_number,
                "total": str(invoice.total),
                "currency": invoice.currency,
            },
        )
        NotificationScheduler.schedule(db, notice)
        result.notifications.append(notice)
        return invoice

    def _succeed(
        self,
        db: Session,
        cycle: BillingCycle,
        subscription: SubscriptionSnapshot,
        invoice: Invoice,
        payment: PaymentResult,
        now: datetime,
        result: CycleResult,
    ) -> CycleResult:
        transition(cycle, BillingCycleStatus.succeeded)
        Invoices.mark_paid(
            db,
            invoice,
            payment_id=payment.payment_id,
            paid_at=now,
            payment_provider=subscription.payment_provider,
        )
        cycle.payment_id = payment.payment_id
        cycle.next_retry_at = None
        cycle.failure_reason = None
        cycle.failure_kind = None
        cycle.completed_at = now

        next_cycle = self.create_next_cycle(db, cycle, subscription)
        pending = [
            ScheduledNotificationCreate(
                notification_type=BillingNotificationType.payment_succeeded,
                tenant_id=cycle.tenant_id,
                subscription_id=cycle.subscription_id,
                billing_cycle_id=cycle.id,
                invoice_id=invoice.id,
                payment_id=payment.payment_id,
                scheduled_for=now,
                metadata={"amount": str(invoice.total), "currency": invoice.currency},
            )
        ]
        next_billing = as_utc(next_cycle.cycle_end)
        notice_at = next_billing - timedelta(days=self.upcoming_notice_days)
        if notice_at > now:
            pending.append(
                ScheduledNotificationCreate(
                    notification_type=BillingNotificationType.upcoming_payment,
                    tenant_id=cycle.tenant_id,
                    subscription_id=cycle.subscription_id,
                    billing_cycle_id=next_cycle.id,
                    scheduled_for=notice_at,
                    metadata={
                        "billing_date": next_billing.isoformat(),
                        "amount": str(subscription.plan_price),
                        "currency": subscription.currency,
                    },
                )
            )
        self._commit(db, cycle, pending, result)
        logger.info(f"Billing cycle {cycle.id} succeeded; next cycle {next_cycle.id}")
        result.next_cycle_id = next_cycle.id
        result.payment_id = payment.payment_id
        return result

    def _fail(
        self,
        db: Session,
        cycle: BillingCycle,
        subscription: SubscriptionSnapshot,
        invoice: Invoice,
        payment: PaymentResult,
        now: datetime,
        result: CycleResult,
    ) -> CycleResult:
        reason = payment.error or "Payment failed"
        retry_count = cycle.retry_count + 1
        cycle.retry_count = retry_count
        cycle.failure_reason = reason
        cycle.failure_kind = FailureKind.payment
        cycle.payment_id = payment.payment_id or cycle.payment_id

        try:
            next_retry_at = self.retry_policy.schedule(retry_count, now)
        except PermanentFailure as exc:
            return self._exhaust(db, cycle, subscription, invoice, reason, now, result, exc)

        transition(cycle, BillingCycleStatus.awaiting_retry)
        cycle.next_retry_at = next_retry_at
        pending = [
            ScheduledNotificationCreate(
                notification_type=BillingNotificationType.payment_failed,
                tenant_id=cycle.tenant_id,
                subscription_id=cycle.subscription_id,
                billing_cycle_id=cycle.id,
                invoice_id=invoice.id,
                payment_id=payment.payment_id,
                scheduled_for=now,
                metadata={
                    "retry_count": retry_count,
                    "next_retry_at": next_retry_at.isoformat(),
                    "failure_reason": reason,
                },
            )
        ]
        self._commit(db, cycle, pending, result)
        logger.info(
            f"Billing cycle {cycle.id} payment failed (attempt {retry_count}); "
            f"retrying at {next_retry_at.isoformat()}"
        )
        return result

    def _exhaust(
        self,
        db: Session,
        cycle: BillingCycle,
        subscription: SubscriptionSnapshot,
        invoice: Invoice,
        reason: str,
        now: datetime,
        result: CycleResult,
        failure: PermanentFailure,
    ) -> CycleResult:
        transition(cycle, BillingCycleStatus.exhausted)
        cycle.next_retry_at = None
        cycle.completed_at = now
        Invoices.mark_uncollectible(db, invoice, memo=f"{failure}: {reason}")
        pending = []
        notice = self.suspension_handler.suspend(
            db,
            subscription,
            f"Payment failed after {cycle.retry_count} attempts: {reason}",
            now,
            billing_cycle_id=cycle.id,
            invoice_id=invoice.id,
        )
        if notice is not None:
            pending.append(notice)
        pending.append(self._escalation(cycle, invoice.id, reason, FailureKind.payment, now))
        self._commit(db, cycle, pending, result)
        logger.warning(f"Billing cycle {cycle.id} exhausted: {failure} ({reason})")
        return result

    def _fail_fast(
        self,
        db: Session,
        cycle: BillingCycle,
        invoice: Invoice | None,
        now: datetime,
        reason: str,
        result: CycleResult,
    ) -> CycleResult:
        transition(cycle, BillingCycleStatus.exhausted)
        cycle.failure_reason = reason
        cycle.failure_kind = FailureKind.data_integrity
        cycle.next_retry_at = None
        cycle.completed_at = now
        if invoice is None and cycle.invoice_id:
            invoice = db.get(Invoice, cycle.invoice_id)
        if invoice is not None and invoice.status == InvoiceStatus.open:
            Invoices.mark_uncollectible(db, invoice, memo=f"Billing data error: {reason}")
        invoice_id = invoice.id if invoice is not None else cycle.invoice_id
        pending = [self._escalation(cycle, invoice_id, reason, FailureKind.data_integrity, now)]
        self._commit(db, cycle, pending, result)
        result.error = reason
        logger.error(f"Billing cycle {cycle.id} closed on data integrity failure: {reason}")
        return result

    def _escalation(
        self,
        cycle: BillingCycle,
        invoice_id,
        reason: str,
        kind: FailureKind,
        now: datetime,
    ) -> ScheduledNotificationCreate:
        return ScheduledNotificationCreate(
            notification_type=BillingNotificationType.billing_escalation,
            tenant_id=cycle.tenant_id,
            subscription_id=cycle.subscription_id,
            billing_cycle_id=cycle.id,
            invoice_id=invoice_id,
            scheduled_for=now,
            metadata={
                "recipients": self.escalation_emails,
                "failure_kind": kind.value,
                "failure_reason": reason,
                "retry_count": cycle.retry_count,
            },
        )

    def _commit(
        self,
        db: Session,
        cycle: BillingCycle,
        pending: list[ScheduledNotificationCreate],
        result: CycleResult,
    ) -> None:
        cycle.claimed_at = None
        NotificationScheduler.schedule_many(db, pending)
        db.commit()
        db.refresh(cycle)
        result.notifications.extend(pending)
        result.outcome = cycle.status.value
        result.status = cycle.status
        result.retry_count = cycle.retry_count
        result.next_retry_at = as_utc(cycle.next_retry_at)
        result.invoice_id = cycle.invoice_id
        result.payment_id = cycle.payment_id
        if result.error is None and cycle.status != BillingCycleStatus.succeeded:
            result.error = cycle.failure_reason

    # ------------------------------------------------------------------
    # Cycle creation
    # ------------------------------------------------------------------

    @staticmethod
    def create_next_cycle(
        db: Session, cycle: BillingCycle, subscription: SubscriptionSnapshot
    ) -> BillingCycle:
        """Schedule the period following ``cycle``; returns the existing row if present."""
        start, end = next_period(as_utc(cycle.cycle_end), subscription.billing_interval)
        existing = db.scalars(
            select(BillingCycle)
            .where(BillingCycle.subscription_id == cycle.subscription_id)
            .where(BillingCycle.cycle_start == start)
        ).first()
        if existing:
            return existing
        next_cycle = BillingCycle(
            tenant_id=cycle.tenant_id,
            subscription_id=cycle.subscription_id,
            cycle_start=start,
            cycle_end=end,
            status=BillingCycleStatus.scheduled,
            retry_count=0,
        )
        db.add(next_cycle)
        db.flush()
        return next_cycle

    def ensure_cycles(self, db: Session, now: datetime | None = None) -> int:
        """Give every active subscription an active cycle. Returns the number created."""
        now = as_utc(now) if now else self.now()
        created = 0
        for subscription in self.provider.list_active(db):
            has_active = db.scalar(
                select(
                    exists().where(
                        BillingCycle.subscription_id == subscription.id,
                        BillingCycle.status.in_(ACTIVE_CYCLE_STATUSES),
                    )
                )
            )
            if has_active:
                continue
            start, end = self._initial_period(db, subscription, now)
            duplicate = db.scalar(
                select(
                    exists().where(
                        BillingCycle.subscription_id == subscription.id,
                        BillingCycle.cycle_start == start,
                    )
                )
            )
            if duplicate:
                continue
            db.add(
                BillingCycle(
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                    cycle_start=start,
                    cycle_end=end,
                    status=BillingCycleStatus.scheduled,
                    retry_count=0,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Billing cycle for subscription {subscription.id} created concurrently")
                continue
            created += 1
            logger.info(
                f"Created missing billing cycle for subscription {subscription.id} "
                f"starting {start.date().isoformat()}"
            )
        return created

    @staticmethod
    def _initial_period(
        db: Session, subscription: SubscriptionSnapshot, now: datetime
    ) -> tuple[datetime, datetime]:
        latest = db.scalars(
            select(BillingCycle)
            .where(BillingCycle.subscription_id == subscription.id)
            .order_by(BillingCycle.cycle_end.desc())
            .limit(1)
        ).first()
        if latest:
            return next_period(as_utc(latest.cycle_end), subscription.billing_interval)
        if subscription.current_period_start:
            start = as_utc(subscription.current_period_start)
            end = as_utc(subscription.current_period_end) or period_end(
                start, subscription.billing_interval
            )
            return start, end
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, period_end(start, subscription.billing_interval)
