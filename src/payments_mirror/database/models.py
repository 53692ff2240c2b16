"""SQLAlchemy models for the local payment/refund/event mirror."""

from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Payment statuses, as reported by the provider."""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RefundStatus(str, enum.Enum):
    """Refund statuses, as reported by the provider."""
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RefundReason(str, enum.Enum):
    """Refund reasons accepted by the provider."""
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"


# Refunds that count against a payment's refundable balance.
BALANCE_CONSUMING_REFUND_STATUSES = (RefundStatus.SUCCEEDED.value, RefundStatus.PROCESSING.value)


class Payment(Base):
    """Local mirror of one provider payment intent."""
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="gbp")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Populated once a successful charge is observed
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    payment_method_brand: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    provider_fee_minor_units: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Fixed at creation from the active mode
    is_live_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Relationships
    refunds: Mapped[List["Refund"]] = relationship(
        "Refund",
        back_populates="payment",
        order_by="Refund.id",
    )

    __table_args__ = (
        Index("ix_payments_created_at_id", "created_at", "id"),
        Index("ix_payments_is_live_mode", "is_live_mode"),
    )


class Refund(Base):
    """Local mirror of one provider refund."""
    __tablename__ = "refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_refund_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_id: Mapped[int] = mapped_column(Integer, ForeignKey("payments.id"), nullable=False, index=True)

    # Denormalised for lookups without a join
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="gbp")
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Copied from the parent payment
    is_live_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Relationship
    payment: Mapped["Payment"] = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        Index("ix_refunds_created_at_id", "created_at", "id"),
    )


class NotificationEvent(Base):
    """Inbound provider notification, kept verbatim as an audit trail."""
    __tablename__ = "notification_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Body exactly as delivered, for audit and replay
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Flipped only once the ledger side effect has completed
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_live_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_notification_events_event_type", "event_type"),
    )
