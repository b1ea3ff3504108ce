import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.db import Base


class BillingNotificationType(enum.Enum):
    upcoming_payment = "upcoming_payment"
    payment_failed = "payment_failed"
    payment_succeeded = "payment_succeeded"
    invoice_generated = "invoice_generated"
    subscription_cancelled = "subscription_cancelled"
    billing_escalation = "billing_escalation"


class ScheduledNotification(Base):
    """Outbound notification intent written by the billing engine.

    Rows are picked up and marked sent by the delivery worker; the engine
    never delivers them itself.
    """

    __tablename__ = "scheduled_notifications"
    __table_args__ = (
        Index("ix_scheduled_notifications_sent_scheduled_for", "sent", "scheduled_for"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    notification_type: Mapped[BillingNotificationType] = mapped_column(
        Enum(BillingNotificationType), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    billing_cycle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    payment_id: Mapped[str | None] = mapped_column(String(120))
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
