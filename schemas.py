from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from models import Frequency, PaymentStatus


def _currency_code(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError("Currency must be a three-letter code")
    return code


CurrencyCode = Annotated[str, AfterValidator(_currency_code)]


class SubscriptionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider_name: str = Field(..., min_length=1, max_length=120)
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: CurrencyCode = "IDR"
    frequency: Frequency
    anchor_payment_date: date


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_name: str
    amount: Decimal
    currency: str
    frequency: Frequency
    anchor_payment_date: date
    created_at: datetime
    updated_at: datetime


class SubscriptionSummaryOut(BaseModel):
    monthly_recurring_total: Decimal
    active_count: int
    upcoming_this_month: Decimal
    currency: str
    degraded: bool = False


class OccurrenceOut(BaseModel):
    """A projected due date tagged with its ledger state."""

    subscription_id: Optional[int]
    payment_id: int
    provider_name: str
    amount: Decimal
    currency: str
    frequency: Optional[Frequency] = None
    original_payment_date: date
    projected_payment_date: date
    payment_status: PaymentStatus
    transaction_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    amount_in_reporting: Decimal
    reporting_currency: str
    rate_degraded: bool = False


class PaymentSummaryOut(BaseModel):
    total_unpaid_amount: Decimal
    unpaid_count: int
    overdue_count: int
    next_payment_date: Optional[date] = None
    next_payment_amount: Optional[Decimal] = None
    currency: str


class PayOccurrenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=18, decimal_places=2)
    note: Optional[str] = Field(default=None, max_length=200)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: Optional[int]
    provider_name: str
    original_payment_date: date
    projected_payment_date: date
    payment_status: PaymentStatus
    transaction_id: Optional[int]
    paid_at: Optional[datetime]


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = Field(default=None, max_length=200)
    date: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    category: str
    note: Optional[str]
    date: datetime
    origin_payment_id: Optional[int] = None


class PayResultOut(BaseModel):
    transaction: TransactionOut
    payment: PaymentOut


class ExchangeRateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_currency: CurrencyCode
    rate: Decimal = Field(..., gt=0)


class ExchangeRateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_currency: str
    target_currency: str
    rate: str
    last_updated: datetime


class DashboardSummaryOut(BaseModel):
    spent_today: Decimal
    spent_yesterday: Decimal
    spent_this_week: Decimal
    spent_last_week: Decimal
    spent_this_month: Decimal
    spent_last_month: Decimal


class ChartPoint(BaseModel):
    date: date
    amount: Decimal


class ChartOut(BaseModel):
    data: list[ChartPoint]
    period: Literal["daily", "weekly", "monthly"]
    start: date
    end: date
