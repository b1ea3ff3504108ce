import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.db import Base


class BillingCycleStatus(enum.Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    succeeded = "succeeded"
    awaiting_retry = "awaiting_retry"
    exhausted = "exhausted"


class FailureKind(enum.Enum):
    payment = "payment"
    data_integrity = "data_integrity"


ACTIVE_CYCLE_STATUSES = (
    BillingCycleStatus.scheduled,
    BillingCycleStatus.in_progress,
    BillingCycleStatus.awaiting_retry,
)
TERMINAL_CYCLE_STATUSES = (
    BillingCycleStatus.succeeded,
    BillingCycleStatus.exhausted,
)


class BillingCycle(Base):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "cycle_start", name="uq_billing_cycles_subscription_start"
        ),
        Index("ix_billing_cycles_status_cycle_end", "status", "cycle_end"),
        Index("ix_billing_cycles_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    cycle_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cycle_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[BillingCycleStatus] = mapped_column(
        Enum(BillingCycleStatus), default=BillingCycleStatus.scheduled
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("invoices.id"))
    payment_id: Mapped[str | None] = mapped_column(String(120))
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    failure_kind: Mapped[FailureKind | None] = mapped_column(Enum(FailureKind))
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    invoice = relationship("Invoice")
