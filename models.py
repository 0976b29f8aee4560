from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Frequency(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    annually = "annually"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    failed = "failed"


class IssueReason(str, Enum):
    rollback_failed = "rollback_failed"
    orphaned_transaction = "orphaned_transaction"


AMOUNT = Numeric(18, 2, asdecimal=True)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    anchor_payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_subscription_amount_positive"),
        Index("ix_subscriptions_user_anchor", "user_id", "anchor_payment_date"),
    )


class SubscriptionPayment(Base, TimestampMixin):
    """A tracked occurrence of a subscription due date."""

    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL")
    )
    provider_name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    original_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    projected_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.unpaid
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    subscription: Mapped[Optional["Subscription"]] = relationship("Subscription")

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "projected_payment_date",
            name="uq_payment_subscription_date",
        ),
        CheckConstraint(
            "(payment_status = 'paid' AND transaction_id IS NOT NULL "
            "AND paid_at IS NOT NULL) OR (payment_status != 'paid' "
            "AND transaction_id IS NULL AND paid_at IS NULL)",
            name="ck_payment_paid_has_transaction",
        ),
        Index("ix_payments_user_status_date", "user_id", "payment_status", "projected_payment_date"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    origin_payment_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )


class ExchangeRate(Base):
    __tablename__ = "currency_exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    target_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Kept as text so the stored value is exactly what the provider sent.
    rate: Mapped[str] = mapped_column(String(40), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "base_currency", "target_currency", name="uq_exchange_rate_pair"
        ),
    )


class ReconciliationIssue(Base):
    __tablename__ = "reconciliation_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[IssueReason] = mapped_column(SAEnum(IssueReason), nullable=False)
    payment_id: Mapped[Optional[int]] = mapped_column(Integer)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    detail: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_reconciliation_issues_user_open", "user_id", "resolved_at"),
    )
