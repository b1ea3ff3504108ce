from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.billing import InvoiceKind, InvoiceStatus
from billing_engine.models.billing_cycle import BillingCycleStatus, FailureKind
from billing_engine.models.notification import BillingNotificationType


class ScheduledNotificationCreate(BaseModel):
    notification_type: BillingNotificationType
    tenant_id: str
    subscription_id: UUID
    billing_cycle_id: UUID | None = None
    invoice_id: UUID | None = None
    payment_id: str | None = None
    scheduled_for: datetime
    metadata: dict = Field(default_factory=dict)


class ScheduledNotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    notification_type: BillingNotificationType
    tenant_id: str
    subscription_id: UUID
    billing_cycle_id: UUID | None = None
    invoice_id: UUID | None = None
    payment_id: str | None = None
    scheduled_for: datetime
    sent: bool
    sent_at: datetime | None = None
    metadata: dict | None = Field(default=None, validation_alias="metadata_")


class BillingCycleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    subscription_id: UUID
    cycle_start: datetime
    cycle_end: datetime
    status: BillingCycleStatus
    invoice_id: UUID | None = None
    payment_id: str | None = None
    retry_count: int
    next_retry_at: datetime | None = None
    failure_reason: str | None = None
    failure_kind: FailureKind | None = None
    created_at: datetime
    updated_at: datetime


class BillingCycleRunResponse(BaseModel):
    run_at: datetime
    cycles_due: int = 0
    cycles_processed: int = 0
    cycles_skipped: int = 0
    cycles_failed: int = 0
    succeeded: int = 0
    awaiting_retry: int = 0
    exhausted: int = 0


class BillingPassResponse(BaseModel):
    run_at: datetime
    stale_claims_released: int = 0
    cycles_created: int = 0
    cycles: BillingCycleRunResponse
    tenants_scanned: int = 0
    overage_invoices_paid: int = 0
    overage_invoices_failed: int = 0
    overage_errors: int = 0
    cycles_purged: int = 0
    notifications_purged: int = 0


class SchedulerStatus(BaseModel):
    is_running: bool
    interval_minutes: int
    max_concurrent_jobs: int
    started_at: datetime | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class BillingReportInvoice(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str | None = None
    kind: InvoiceKind
    status: InvoiceStatus
    currency: str
    total: Decimal
    amount_paid: Decimal
    due_at: datetime | None = None
    paid_at: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class BillingReportResponse(BaseModel):
    tenant_id: str
    period_start: datetime
    period_end: datetime
    total_revenue: Decimal = Decimal("0.00")
    invoices_generated: int = 0
    payment_success_rate: float = 0.0
    overage_charges: Decimal = Decimal("0.00")
    failed_payments: int = 0
    invoices: list[BillingReportInvoice] = Field(default_factory=list)
