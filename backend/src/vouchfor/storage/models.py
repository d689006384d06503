"""Database models for the referral ledger."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from vouchfor.utils import utcnow

MONEY = Numeric(12, 2)
RATE = Numeric(12, 4)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    # Store the lowercase values, not the member names
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class CommissionType(str, Enum):
    """How a program pays its affiliates."""
    PERCENTAGE = "percentage"  # commission_value is a percent of the sale
    FIXED = "fixed"            # commission_value is a flat amount per sale


class ConversionStatus(str, Enum):
    """Conversion lifecycle states."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"


class CommissionStatus(str, Enum):
    """Commission lifecycle states."""
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REVERSED = "reversed"


class OutboxKind(str, Enum):
    """Deferred ledger work."""
    ATTRIBUTE = "attribute"
    COMMISSION = "commission"
    REFUND = "refund"


class OutboxStatus(str, Enum):
    """Outbox task states."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class Vendor(Base):
    """Vendor referral program.

    Created by vendor onboarding; the ledger only reads it.
    """

    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Program terms
    commission_type: Mapped[CommissionType] = mapped_column(
        _enum(CommissionType), nullable=False, default=CommissionType.PERCENTAGE
    )
    commission_value: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    cookie_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=60)  # days

    destination_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Vendor(id={self.id}, type={self.commission_type}, value={self.commission_value})>"


class ReferralSession(Base):
    """A recorded click through an affiliate tracking link.

    Immutable once written. Expiry is evaluated against a conversion's
    event time, rows are never deleted.
    """

    __tablename__ = "referral_sessions"
    __table_args__ = (
        Index("ix_referral_sessions_vendor_expires", "vendor_id", "expires_at"),
        Index("ix_referral_sessions_affiliate_created", "affiliate_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    affiliate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Request context (informational only)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    landing_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    vendor: Mapped[Vendor] = relationship("Vendor")

    def __repr__(self) -> str:
        return f"<ReferralSession(id={self.id}, affiliate={self.affiliate_id}, vendor={self.vendor_id})>"


class Conversion(Base):
    """A paid sale reported by the payment provider."""

    __tablename__ = "conversions"
    __table_args__ = (
        UniqueConstraint(
            "external_transaction_id", "vendor_id", name="uq_conversions_transaction_vendor"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    external_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    status: Mapped[ConversionStatus] = mapped_column(
        _enum(ConversionStatus), nullable=False, default=ConversionStatus.PENDING, index=True
    )

    # Attribution (set once)
    referral_session_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("referral_sessions.id"), nullable=True
    )
    affiliate_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Timestamps
    converted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # provider event time
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    commissions: Mapped[list["Commission"]] = relationship(
        "Commission", back_populates="conversion"
    )

    def __repr__(self) -> str:
        return (
            f"<Conversion(id={self.id}, txn={self.external_transaction_id}, "
            f"status={self.status}, amount={self.amount})>"
        )


class Commission(Base):
    """Affiliate earnings for one confirmed conversion."""

    __tablename__ = "commissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversion_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversions.id"), nullable=False, unique=True
    )
    affiliate_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), nullable=False)

    sale_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    commission_type: Mapped[CommissionType] = mapped_column(_enum(CommissionType), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    status: Mapped[CommissionStatus] = mapped_column(
        _enum(CommissionStatus), nullable=False, default=CommissionStatus.PENDING, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    conversion: Mapped[Conversion] = relationship("Conversion", back_populates="commissions")

    def __repr__(self) -> str:
        return (
            f"<Commission(id={self.id}, conversion={self.conversion_id}, "
            f"amount={self.commission_amount}, status={self.status})>"
        )


class OutboxTask(Base):
    """Durable record of ledger work still to be done for a conversion.

    Written in the same transaction as the state change that requires it,
    so work is never lost between steps.
    """

    __tablename__ = "outbox_tasks"
    __table_args__ = (
        UniqueConstraint("kind", "conversion_id", name="uq_outbox_tasks_kind_conversion"),
        Index("ix_outbox_tasks_status_available", "status", "available_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[OutboxKind] = mapped_column(_enum(OutboxKind), nullable=False)
    conversion_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversions.id"), nullable=False, index=True
    )

    status: Mapped[OutboxStatus] = mapped_column(
        _enum(OutboxStatus), nullable=False, default=OutboxStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<OutboxTask(id={self.id}, kind={self.kind}, status={self.status}, attempts={self.attempts})>"


class SignupReferral(Base):
    """Signup attributed through the legacy tracking-event endpoint.

    Carries no commission; one row per (affiliate, vendor).
    """

    __tablename__ = "signup_referrals"
    __table_args__ = (
        UniqueConstraint("affiliate_id", "vendor_id", name="uq_signup_referrals_affiliate_vendor"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    affiliate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), nullable=False)
    referral_session_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("referral_sessions.id"), nullable=True
    )

    event_name: Mapped[str] = mapped_column(String(50), nullable=False, default="signup")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="signup")
    commission_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SignupReferral(affiliate={self.affiliate_id}, vendor={self.vendor_id})>"
