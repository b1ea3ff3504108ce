"""Billing lifecycle services package.

Recurring billing cycles, payment retries, overage invoicing, suspension
and tenant billing reports.

Typical use:
    from billing_engine.services import billing_lifecycle
    billing_lifecycle.dispatcher.run_pass()
    billing_lifecycle.billing_cycles.process(db, cycle_id)
"""

from billing_engine.config import settings
from billing_engine.db import SessionLocal
from billing_engine.services.billing_lifecycle.cleanup import CleanupJob, CleanupResult
from billing_engine.services.billing_lifecycle.cycles import (
    VALID_TRANSITIONS,
    BillingCycleProcessor,
    CycleResult,
    list_due_cycle_ids,
    release_stale_claims,
    validate_transition,
)
from billing_engine.services.billing_lifecycle.dispatch import BillingCycleDispatcher
from billing_engine.services.billing_lifecycle.errors import (
    BillingEngineError,
    DataIntegrityFailure,
    InfrastructureFailure,
    InvalidTransitionError,
    InvoiceStateError,
    PermanentFailure,
    TransientPaymentFailure,
)
from billing_engine.services.billing_lifecycle.gateways import HttpPaymentGateway
from billing_engine.services.billing_lifecycle.interfaces import (
    InvoiceGenerator,
    PaymentGateway,
    PaymentResult,
    SubscriptionProvider,
    SubscriptionSnapshot,
)
from billing_engine.services.billing_lifecycle.invoices import Invoices, LineItem
from billing_engine.services.billing_lifecycle.notifications import NotificationScheduler
from billing_engine.services.billing_lifecycle.overages import OverageBiller, OverageResult
from billing_engine.services.billing_lifecycle.payment_attempts import (
    PaymentAttemptExecutor,
    idempotency_key,
)
from billing_engine.services.billing_lifecycle.providers import (
    DbSubscriptionProvider,
    SubscriptionInvoiceGenerator,
)
from billing_engine.services.billing_lifecycle.reports import BillingReports
from billing_engine.services.billing_lifecycle.retry_policy import RetryPolicy
from billing_engine.services.billing_lifecycle.suspension import SubscriptionSuspensionHandler


def build_dispatcher(
    gateway: PaymentGateway | None = None,
    provider: SubscriptionProvider | None = None,
    session_factory=SessionLocal,
    clock=None,
) -> BillingCycleDispatcher:
    """Wire the engine from settings; collaborators can be swapped for tests."""
    gateway = gateway or HttpPaymentGateway(
        settings.payment_gateway_url,
        api_key=settings.payment_gateway_api_key,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    provider = provider or DbSubscriptionProvider()
    executor = PaymentAttemptExecutor(gateway)
    processor = BillingCycleProcessor(
        provider,
        SubscriptionInvoiceGenerator(
            tax_rate=settings.tax_rate, due_days=settings.invoice_due_days
        ),
        executor,
        RetryPolicy(settings.retry_intervals_hours, settings.max_retries),
        SubscriptionSuspensionHandler(provider),
        escalation_emails=settings.escalation_emails,
        upcoming_notice_days=settings.upcoming_notice_days,
        clock=clock,
    )
    overage_biller = OverageBiller(
        provider,
        executor,
        tax_rate=settings.overage_tax_rate,
        due_days=settings.overage_due_days,
        clock=clock,
    )
    return BillingCycleDispatcher(
        session_factory,
        processor,
        overage_biller,
        CleanupJob(settings.retention_days),
        max_concurrent_jobs=settings.max_concurrent_jobs,
        batch_size=settings.batch_size,
        claim_timeout_minutes=settings.claim_timeout_minutes,
        clock=clock,
    )


# Singleton instances for service access
dispatcher = build_dispatcher()
billing_cycles = dispatcher.processor
overage_billing = dispatcher.overage_biller
notifications = NotificationScheduler()
cleanup = dispatcher.cleanup_job
reports = BillingReports()

__all__ = [
    "VALID_TRANSITIONS",
    "BillingCycleDispatcher",
    "BillingCycleProcessor",
    "BillingEngineError",
    "BillingReports",
    "CleanupJob",
    "CleanupResult",
    "CycleResult",
    "DataIntegrityFailure",
    "DbSubscriptionProvider",
    "HttpPaymentGateway",
    "InfrastructureFailure",
    "InvalidTransitionError",
    "InvoiceGenerator",
    "InvoiceStateError",
    "Invoices",
    "LineItem",
    "NotificationScheduler",
    "OverageBiller",
    "OverageResult",
    "PaymentAttemptExecutor",
    "PaymentGateway",
    "PaymentResult",
    "PermanentFailure",
    "RetryPolicy",
    "SubscriptionInvoiceGenerator",
    "SubscriptionProvider",
    "SubscriptionSnapshot",
    "SubscriptionSuspensionHandler",
    "TransientPaymentFailure",
    "build_dispatcher",
    "billing_cycles",
    "cleanup",
    "dispatcher",
    "idempotency_key",
    "list_due_cycle_ids",
    "notifications",
    "overage_billing",
    "release_stale_claims",
    "reports",
    "validate_transition",
]
