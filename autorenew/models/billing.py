import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from autorenew.db import Base


class PaymentSourceStatus(enum.Enum):
    active = "active"
    cancelled = "cancelled"


class BillingAttemptStatus(enum.Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"
    error = "error"


FAILED_STATUSES = (BillingAttemptStatus.declined, BillingAttemptStatus.error)


class PaymentSource(Base):
    __tablename__ = "payment_sources"
    __table_args__ = (
        Index(
            "uq_payment_sources_active_subscriber",
            "subscriber_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway_source_id: Mapped[str] = mapped_column(String(120), nullable=False)
    card_brand: Mapped[str | None] = mapped_column(String(40))
    card_last_four: Mapped[str | None] = mapped_column(String(4))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[PaymentSourceStatus] = mapped_column(
        Enum(PaymentSourceStatus), default=PaymentSourceStatus.active
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class BillingAttempt(Base):
    __tablename__ = "billing_attempts"
    __table_args__ = (
        UniqueConstraint("reference", name="uq_billing_attempts_reference"),
        Index("ix_billing_attempts_subscriber_plan", "subscriber_id", "plan_id", "created_at"),
        Index("ix_billing_attempts_next_retry_at", "next_retry_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(40), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="COP")
    status: Mapped[BillingAttemptStatus] = mapped_column(
        Enum(BillingAttemptStatus), default=BillingAttemptStatus.pending
    )
    reference: Mapped[str] = mapped_column(String(160), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(120), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_detail: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_final(self) -> bool:
        if self.status == BillingAttemptStatus.approved:
            return True
        if self.status == BillingAttemptStatus.error and self.gateway_transaction_id is None:
            return False
        return self.status in FAILED_STATUSES and self.next_retry_at is None


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    plan_id: Mapped[str] = mapped_column(String(40), nullable=False, default="free")
    language: Mapped[str] = mapped_column(String(8), default="es")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    renewal_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
