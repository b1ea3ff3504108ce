"""Collaborator interfaces consumed by the billing lifecycle engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.orm import Session

from billing_engine.models.billing import Invoice
from billing_engine.models.subscription import BillingInterval, SubscriptionStatus


@dataclass
class PaymentResult:
    """Outcome of a single gateway charge."""

    success: bool
    payment_id: str | None = None
    error: str | None = None
    retryable: bool = True


@dataclass
class SubscriptionSnapshot:
    """Read-only view of a subscription at billing time."""

    id: uuid.UUID
    tenant_id: str
    plan_name: str
    plan_price: Decimal
    currency: str
    billing_interval: BillingInterval
    status: SubscriptionStatus
    customer_id: str | None = None
    payment_provider: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Charge interface; must honour idempotency keys."""

    def attempt(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        customer_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult: ...


class SubscriptionProvider(Protocol):
    """Subscription lookup and suspension interface."""

    def get(self, db: Session, tenant_id: str) -> SubscriptionSnapshot | None: ...
    def suspend(self, db: Session, subscription_id: uuid.UUID, reason: str) -> bool: ...
    def list_active(self, db: Session) -> list[SubscriptionSnapshot]: ...


class InvoiceGenerator(Protocol):
    """Builds the invoice for one billing period."""

    def generate(
        self,
        db: Session,
        tenant_id: str,
        subscription: SubscriptionSnapshot,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice: ...
