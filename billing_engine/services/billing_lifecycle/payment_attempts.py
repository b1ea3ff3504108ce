"""Single payment attempt against the gateway for one invoice."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from billing_engine.metrics import record_payment_attempt
from billing_engine.models.billing import Invoice, InvoiceStatus
from billing_engine.services.billing_lifecycle.errors import (
    DataIntegrityFailure,
    InvoiceStateError,
    TransientPaymentFailure,
)
from billing_engine.services.billing_lifecycle.interfaces import (
    PaymentGateway,
    PaymentResult,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)


def idempotency_key(invoice: Invoice) -> str:
    """Stable gateway key for every attempt on one invoice."""
    return f"invoice_{invoice.id}"


class PaymentAttemptExecutor:
    """Charges an invoice once and classifies the outcome.

    Returns a successful ``PaymentResult`` or a failed one the caller may
    retry. Gateway transport errors and ``TransientPaymentFailure`` are folded
    into a retryable failure.
    Missing customer configuration and declines the gateway marks as not
    retryable raise ``DataIntegrityFailure``.
    """

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    def execute(
        self,
        invoice: Invoice,
        subscription: SubscriptionSnapshot,
        *,
        purpose: str = "subscription",
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        if invoice.status == InvoiceStatus.paid:
            logger.info(f"Invoice {invoice.id} already paid; skipping gateway call")
            record_payment_attempt(purpose, "already_paid")
            return PaymentResult(success=True, payment_id=invoice.payment_id)
        if invoice.status != InvoiceStatus.open:
            raise InvoiceStateError(
                f"Invoice {invoice.id} is {invoice.status.value} and cannot be charged"
            )
        if not subscription.customer_id:
            raise DataIntegrityFailure(
                f"Subscription {subscription.id} has no payment customer configured"
            )

        key = idempotency_key(invoice)
        payload = {"tenant_id": invoice.tenant_id, "invoice_id": str(invoice.id)}
        if metadata:
            payload.update(metadata)
        try:
            result = self.gateway.attempt(
                key,
                invoice.amount_due,
                invoice.currency,
                subscription.customer_id,
                payload,
            )
        except (httpx.HTTPError, TransientPaymentFailure) as exc:
            logger.warning(f"Payment gateway error for {key}: {exc}")
            record_payment_attempt(purpose, "error")
            return PaymentResult(success=False, error=f"Gateway error: {exc}", retryable=True)

        if result.success:
            record_payment_attempt(purpose, "succeeded")
            return result
        record_payment_attempt(purpose, "failed")
        if not result.retryable:
            raise DataIntegrityFailure(result.error or "Payment declined permanently")
        return result
