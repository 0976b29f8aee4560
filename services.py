from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from fx_rates import CurrencyNormalizer, round_amount
from models import (
    ExchangeRate,
    IssueReason,
    PaymentStatus,
    ReconciliationIssue,
    Subscription,
    SubscriptionPayment,
    Transaction,
)
from periods import Period, bucket_start, month_end, month_start, spending_windows
from providers import canonical_provider_name
from recurrence import (
    default_horizon,
    local_today,
    merge_projections,
    monthly_equivalent,
    project_due_dates,
)
from schemas import (
    ExchangeRateIn,
    OccurrenceOut,
    PayOccurrenceIn,
    PaymentSummaryOut,
    SubscriptionIn,
    SubscriptionSummaryOut,
    TransactionIn,
)


logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_CATEGORY = "Subscriptions"

TRANSACTION_SORT_FIELDS = {
    "date": Transaction.date,
    "amount": Transaction.amount,
}

TRACK_ATTEMPTS = 3


class NotFoundError(ValueError):
    pass


class AlreadyPaidError(ValueError):
    pass


class CalculationMismatchError(ValueError):
    pass


class TransactionLockedError(ValueError):
    def __init__(self, message: str, *, payment_id: int) -> None:
        super().__init__(message)
        self.payment_id = payment_id


class ReconciliationFailedError(RuntimeError):
    """A pay attempt left a transaction behind that could not be removed."""

    def __init__(self, message: str, *, payment_id: int, transaction_id: int) -> None:
        super().__init__(message)
        self.payment_id = payment_id
        self.transaction_id = transaction_id


def percent_change(current: Decimal, previous: Decimal) -> Optional[float]:
    if not previous:
        return None
    return float((Decimal(current) - Decimal(previous)) / Decimal(previous) * 100)


class ExchangeRateService:
    def __init__(self, session: Session, reporting_currency: Optional[str] = None) -> None:
        self.session = session
        self.reporting_currency = (
            reporting_currency or get_settings().reporting_currency
        ).upper()

    def list(self) -> list[ExchangeRate]:
        stmt = (
            select(ExchangeRate)
            .where(ExchangeRate.target_currency == self.reporting_currency)
            .order_by(ExchangeRate.base_currency)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: ExchangeRateIn) -> ExchangeRate:
        if data.base_currency == self.reporting_currency:
            raise ValueError("Cannot set a rate for the reporting currency itself")
        rate = self.session.scalar(
            select(ExchangeRate).where(
                ExchangeRate.base_currency == data.base_currency,
                ExchangeRate.target_currency == self.reporting_currency,
            )
        )
        if not rate:
            rate = ExchangeRate(
                base_currency=data.base_currency,
                target_currency=self.reporting_currency,
            )
            self.session.add(rate)
        rate.rate = str(data.rate)
        rate.last_updated = datetime.utcnow()
        self.session.commit()
        self.session.refresh(rate)
        return rate

    def normalizer(self) -> CurrencyNormalizer:
        rates: dict[str, Decimal] = {}
        for row in self.list():
            value = Decimal(row.rate)
            if value <= 0:
                logger.warning(
                    f"fx_rate_ignored: base={row.base_currency} rate={row.rate}"
                )
                continue
            rates[row.base_currency] = value
        return CurrencyNormalizer(rates, self.reporting_currency)


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def create(
        self, data: TransactionIn, *, origin_payment_id: Optional[int] = None
    ) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            category=data.category,
            note=data.note,
            date=data.date,
            origin_payment_id=origin_payment_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None,
        sort: str = "date",
        direction: str = "desc",
    ) -> list[Transaction]:
        if sort not in TRANSACTION_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field: {sort}")
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort direction: {direction}")
        column = TRANSACTION_SORT_FIELDS[sort]
        if direction == "asc":
            order = (column.asc(), Transaction.id.asc())
        else:
            order = (column.desc(), Transaction.id.desc())

        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if search:
            like = f"%{search.strip().lower()}%"
            stmt = stmt.where(func.lower(func.coalesce(Transaction.note, "")).like(like))
        stmt = stmt.order_by(*order).limit(limit).offset(offset)
        return self.session.scalars(stmt).all()

    def settled_payment_id(self, transaction_id: int) -> Optional[int]:
        return self.session.scalar(
            select(SubscriptionPayment.id).where(
                SubscriptionPayment.transaction_id == transaction_id
            )
        )

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        payment_id = self.settled_payment_id(txn.id)
        if payment_id is not None and Decimal(data.amount) != Decimal(txn.amount):
            raise TransactionLockedError(
                f"Transaction {txn.id} settles payment {payment_id}; its amount is fixed",
                payment_id=payment_id,
            )
        txn.amount = data.amount
        txn.category = data.category
        txn.note = data.note
        txn.date = data.date
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        # A paid occurrence points at its transaction; that link is history.
        payment_id = self.settled_payment_id(txn.id)
        if payment_id is not None:
            raise TransactionLockedError(
                f"Transaction {txn.id} settles payment {payment_id}",
                payment_id=payment_id,
            )
        self.session.delete(txn)
        self.session.commit()


class SubscriptionService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        *,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.rates = rates or ExchangeRateService(session)

    def get(self, subscription_id: int) -> Subscription:
        sub = self.session.get(Subscription, subscription_id)
        if not sub or sub.user_id != self.user_id:
            raise NotFoundError("Subscription not found")
        return sub

    def list(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.anchor_payment_date, Subscription.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: SubscriptionIn) -> Subscription:
        sub = Subscription(
            user_id=self.user_id,
            provider_name=canonical_provider_name(data.provider_name),
            amount=data.amount,
            currency=data.currency,
            frequency=data.frequency,
            anchor_payment_date=data.anchor_payment_date,
        )
        self.session.add(sub)
        self.session.commit()
        self.session.refresh(sub)
        logger.info(f"subscription_created: id={sub.id} user_id={self.user_id}")
        return sub

    def update(self, subscription_id: int, data: SubscriptionIn) -> Subscription:
        sub = self.get(subscription_id)
        values = data.model_dump()
        values["provider_name"] = canonical_provider_name(data.provider_name)
        for field, value in values.items():
            setattr(sub, field, value)
        # Unpaid occurrences are re-tracked from the new rule; paid and failed
        # ones are history and keep what was recorded.
        dropped = self.session.execute(
            delete(SubscriptionPayment)
            .where(
                SubscriptionPayment.subscription_id == sub.id,
                SubscriptionPayment.payment_status == PaymentStatus.unpaid,
            )
            .execution_options(synchronize_session="fetch")
        ).rowcount
        self.session.commit()
        self.session.refresh(sub)
        logger.info(
            f"subscription_updated: id={sub.id} unpaid_occurrences_dropped={dropped}"
        )
        return sub

    def delete(self, subscription_id: int) -> None:
        sub = self.get(subscription_id)
        self.session.execute(
            delete(SubscriptionPayment)
            .where(
                SubscriptionPayment.subscription_id == sub.id,
                SubscriptionPayment.payment_status == PaymentStatus.unpaid,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(
            update(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == sub.id)
            .values(subscription_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(sub)
        self.session.commit()
        self.session.expire_all()
        logger.info(f"subscription_deleted: id={subscription_id} user_id={self.user_id}")

    def projection(
        self, subscription_id: int, horizon_end: Optional[date] = None
    ) -> list[date]:
        sub = self.get(subscription_id)
        horizon_end = horizon_end or default_horizon()
        return list(
            project_due_dates(sub.anchor_payment_date, sub.frequency, horizon_end)
        )

    def summary(self, today: Optional[date] = None) -> SubscriptionSummaryOut:
        today = today or local_today()
        normalizer = self.rates.normalizer()
        subs = self.list()
        first, last = month_start(today), month_end(today)

        monthly_total = Decimal("0")
        upcoming = Decimal("0")
        degraded = False
        for sub in subs:
            conversion = normalizer.normalize(sub.amount, sub.currency)
            degraded = degraded or conversion.degraded
            monthly_total += monthly_equivalent(conversion.amount, sub.frequency)
            for due in project_due_dates(sub.anchor_payment_date, sub.frequency, last):
                if due >= first:
                    upcoming += conversion.amount

        currency = normalizer.reporting_currency
        return SubscriptionSummaryOut(
            monthly_recurring_total=round_amount(monthly_total, currency),
            active_count=len(subs),
            upcoming_this_month=round_amount(upcoming, currency),
            currency=currency,
            degraded=degraded,
        )


def _due_stream(sub: Subscription, horizon_end: date):
    for due in project_due_dates(sub.anchor_payment_date, sub.frequency, horizon_end):
        yield due, sub.id, sub


class PaymentService:
    """Tracks subscription occurrences and settles them.

    Paying an occurrence writes a transaction first and then flips the
    occurrence from unpaid to paid with a conditional update. If the flip does
    not happen the transaction is deleted again, so a run leaves either both
    records or neither. When that delete fails too the occurrence is marked
    failed and a ``ReconciliationIssue`` row is written for manual follow-up.
    """

    def __init__(
        self,
        session: Session,
        user_id: str,
        *,
        transactions: Optional[TransactionService] = None,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.transactions = transactions or TransactionService(session, user_id)
        self.rates = rates or ExchangeRateService(session)

    # Listing

    def _track(self, horizon_end: date) -> list[SubscriptionPayment]:
        subs = SubscriptionService(self.session, self.user_id, rates=self.rates).list()
        streams = [_due_stream(sub, horizon_end) for sub in subs]
        plan = list(merge_projections(*streams, key=lambda item: (item[0], item[1])))
        if not plan:
            return []

        subscription_ids = [sub.id for sub in subs]
        for attempt in range(1, TRACK_ATTEMPTS + 1):
            existing = self._tracked_rows(subscription_ids, horizon_end)
            created = 0
            for due, sub_id, sub in plan:
                if (sub_id, due) in existing:
                    continue
                row = SubscriptionPayment(
                    user_id=self.user_id,
                    subscription_id=sub_id,
                    provider_name=sub.provider_name,
                    amount=sub.amount,
                    currency=sub.currency,
                    original_payment_date=sub.anchor_payment_date,
                    projected_payment_date=due,
                    payment_status=PaymentStatus.unpaid,
                )
                self.session.add(row)
                existing[(sub_id, due)] = row
                created += 1
            if created:
                try:
                    self.session.commit()
                except IntegrityError:
                    # Another listing tracked some of these dates, possibly over a
                    # shorter horizon.
                    self.session.rollback()
                    if attempt == TRACK_ATTEMPTS:
                        raise
                    logger.warning(
                        f"occurrences_track_conflict: user_id={self.user_id} attempt={attempt}"
                    )
                    continue
                logger.info(f"occurrences_tracked: user_id={self.user_id} created={created}")
            return [existing[(sub_id, due)] for due, sub_id, _sub in plan]

    def _tracked_rows(
        self, subscription_ids: list[int], horizon_end: date
    ) -> dict[tuple[int, date], SubscriptionPayment]:
        stmt = (
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.user_id == self.user_id,
                SubscriptionPayment.subscription_id.in_(subscription_ids),
                SubscriptionPayment.projected_payment_date <= horizon_end,
            )
            .execution_options(populate_existing=True)
        )
        return {
            (row.subscription_id, row.projected_payment_date): row
            for row in self.session.scalars(stmt).all()
        }

    def list_occurrences(
        self,
        horizon_end: Optional[date] = None,
        status: Optional[PaymentStatus] = None,
    ) -> list[OccurrenceOut]:
        horizon_end = horizon_end or default_horizon()
        normalizer = self.rates.normalizer()
        results: list[OccurrenceOut] = []
        for row in self._track(horizon_end):
            if status is not None and row.payment_status != status:
                continue
            conversion = normalizer.normalize(row.amount, row.currency)
            results.append(
                OccurrenceOut(
                    subscription_id=row.subscription_id,
                    payment_id=row.id,
                    provider_name=row.provider_name,
                    amount=row.amount,
                    currency=row.currency,
                    frequency=row.subscription.frequency if row.subscription else None,
                    original_payment_date=row.original_payment_date,
                    projected_payment_date=row.projected_payment_date,
                    payment_status=row.payment_status,
                    transaction_id=row.transaction_id,
                    paid_at=row.paid_at,
                    amount_in_reporting=conversion.amount,
                    reporting_currency=normalizer.reporting_currency,
                    rate_degraded=conversion.degraded,
                )
            )
        return results

    def list_unpaid_occurrences(
        self, horizon_end: Optional[date] = None
    ) -> list[OccurrenceOut]:
        return self.list_occurrences(horizon_end, PaymentStatus.unpaid)

    def payment_summary(
        self,
        today: Optional[date] = None,
        occurrences: Optional[list[OccurrenceOut]] = None,
    ) -> PaymentSummaryOut:
        today = today or local_today()
        if occurrences is None:
            occurrences = self.list_unpaid_occurrences(default_horizon(today))
        unpaid = [o for o in occurrences if o.payment_status == PaymentStatus.unpaid]
        upcoming = [o for o in unpaid if o.projected_payment_date >= today]
        next_due = upcoming[0] if upcoming else None
        return PaymentSummaryOut(
            total_unpaid_amount=sum(
                (o.amount_in_reporting for o in unpaid), Decimal("0")
            ),
            unpaid_count=len(unpaid),
            overdue_count=sum(1 for o in unpaid if o.projected_payment_date < today),
            next_payment_date=next_due.projected_payment_date if next_due else None,
            next_payment_amount=next_due.amount_in_reporting if next_due else None,
            currency=self.rates.reporting_currency,
        )

    # Paying

    def pay(
        self,
        payment_id: int,
        override: Optional[PayOccurrenceIn] = None,
        *,
        now: Optional[datetime] = None,
    ) -> tuple[Transaction, SubscriptionPayment]:
        override = override or PayOccurrenceIn()
        now = now or datetime.utcnow()

        payment = self._load_payable(payment_id)
        amount = self._resolve_amount(payment, override)
        due = payment.projected_payment_date
        txn = self.transactions.create(
            TransactionIn(
                amount=amount,
                category=override.category or DEFAULT_PAYMENT_CATEGORY,
                note=override.note or f"Payment for {payment.provider_name} - {due.isoformat()}",
                date=now,
            ),
            origin_payment_id=payment.id,
        )

        try:
            self._mark_paid(payment.id, txn.id, now)
        except Exception as exc:
            self.session.rollback()
            self._roll_back_transaction(payment.id, txn.id, exc)
            raise

        self.session.refresh(payment)
        logger.info(
            f"pay_committed: payment_id={payment.id} transaction_id={txn.id} amount={amount}"
        )
        return txn, payment

    def _load_payable(self, payment_id: int) -> SubscriptionPayment:
        payment = self.session.scalar(
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.id == payment_id,
                SubscriptionPayment.user_id == self.user_id,
            )
            .execution_options(populate_existing=True)
        )
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.payment_status == PaymentStatus.paid:
            raise AlreadyPaidError("Payment already settled")
        if payment.payment_status == PaymentStatus.failed:
            raise NotFoundError("Payment is awaiting manual reconciliation")
        return payment

    def _resolve_amount(
        self, payment: SubscriptionPayment, override: PayOccurrenceIn
    ) -> Decimal:
        if override.amount is not None:
            return override.amount

        sub = None
        if payment.subscription_id is not None:
            sub = self.session.get(Subscription, payment.subscription_id)
        if not sub or sub.user_id != self.user_id:
            raise CalculationMismatchError("Subscription for this payment no longer exists")

        due = payment.projected_payment_date
        projection = project_due_dates(sub.anchor_payment_date, sub.frequency, due)
        if due not in projection:
            raise CalculationMismatchError(
                f"{due.isoformat()} is not a due date of subscription {sub.id}"
            )

        conversion = self.rates.normalizer().normalize(sub.amount, sub.currency)
        if conversion.degraded:
            raise CalculationMismatchError(
                f"No exchange rate available for {sub.currency}"
            )
        return conversion.amount

    def _mark_paid(self, payment_id: int, transaction_id: int, paid_at: datetime) -> None:
        result = self.session.execute(
            update(SubscriptionPayment)
            .where(
                SubscriptionPayment.id == payment_id,
                SubscriptionPayment.user_id == self.user_id,
                SubscriptionPayment.payment_status == PaymentStatus.unpaid,
            )
            .values(
                payment_status=PaymentStatus.paid,
                transaction_id=transaction_id,
                paid_at=paid_at,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyPaidError("Payment already settled")
        self.session.commit()

    def _roll_back_transaction(
        self, payment_id: int, transaction_id: int, cause: Exception
    ) -> None:
        try:
            self.transactions.delete(transaction_id)
        except Exception as exc:
            self.session.rollback()
            logger.error(
                f"reconciliation_failed: payment_id={payment_id} "
                f"transaction_id={transaction_id} cause={cause!r} rollback_error={exc!r}"
            )
            self._record_failure(payment_id, transaction_id, cause, exc)
            raise ReconciliationFailedError(
                f"Transaction {transaction_id} could not be removed after payment "
                f"{payment_id} failed; manual reconciliation needed",
                payment_id=payment_id,
                transaction_id=transaction_id,
            ) from exc
        logger.warning(
            f"pay_rolled_back: payment_id={payment_id} transaction_id={transaction_id} "
            f"cause={cause!r}"
        )

    def _record_failure(
        self,
        payment_id: int,
        transaction_id: int,
        cause: Exception,
        rollback_error: Exception,
    ) -> None:
        try:
            self.session.execute(
                update(SubscriptionPayment)
                .where(
                    SubscriptionPayment.id == payment_id,
                    SubscriptionPayment.payment_status == PaymentStatus.unpaid,
                )
                .values(payment_status=PaymentStatus.failed, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            self.session.add(
                ReconciliationIssue(
                    user_id=self.user_id,
                    reason=IssueReason.rollback_failed,
                    payment_id=payment_id,
                    transaction_id=transaction_id,
                    detail=f"cause={cause!r} rollback_error={rollback_error!r}",
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                f"reconciliation_issue_not_recorded: payment_id={payment_id} "
                f"transaction_id={transaction_id}"
            )


class ReconciliationService:
    """Finds payment transactions that no paid occurrence points back to."""

    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id

    def open_issues(self) -> list[ReconciliationIssue]:
        stmt = select(ReconciliationIssue).where(ReconciliationIssue.resolved_at.is_(None))
        if self.user_id is not None:
            stmt = stmt.where(ReconciliationIssue.user_id == self.user_id)
        return self.session.scalars(stmt.order_by(ReconciliationIssue.id)).all()

    def sweep(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .outerjoin(
                SubscriptionPayment,
                SubscriptionPayment.id == Transaction.origin_payment_id,
            )
            .where(
                Transaction.origin_payment_id.is_not(None),
                or_(
                    SubscriptionPayment.id.is_(None),
                    SubscriptionPayment.transaction_id.is_(None),
                    SubscriptionPayment.transaction_id != Transaction.id,
                ),
            )
            .order_by(Transaction.id)
        )
        if self.user_id is not None:
            stmt = stmt.where(Transaction.user_id == self.user_id)
        orphans = self.session.scalars(stmt).all()

        known = {issue.transaction_id for issue in self.open_issues()}
        recorded = 0
        for txn in orphans:
            if txn.id in known:
                continue
            self.session.add(
                ReconciliationIssue(
                    user_id=txn.user_id,
                    reason=IssueReason.orphaned_transaction,
                    payment_id=txn.origin_payment_id,
                    transaction_id=txn.id,
                    detail="transaction is not referenced by a paid occurrence",
                )
            )
            recorded += 1
        self.session.commit()
        logger.info(f"reconciliation_sweep: orphans={len(orphans)} recorded={recorded}")
        return orphans


class DashboardService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _spent_between(self, start: date, end: date) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.date >= datetime.combine(start, time.min),
                Transaction.date < datetime.combine(end + timedelta(days=1), time.min),
            )
        ).scalar_one()
        return Decimal(str(total or 0))

    def summary(self, today: Optional[date] = None) -> dict[str, Decimal]:
        today = today or local_today()
        return {
            f"spent_{window.slug}": self._spent_between(window.start, window.end)
            for window in spending_windows(today)
        }

    def chart(self, period: Period) -> list[dict[str, object]]:
        rows = self.session.execute(
            select(Transaction.date, Transaction.amount).where(
                Transaction.user_id == self.user_id,
                Transaction.date >= datetime.combine(period.start, time.min),
                Transaction.date
                < datetime.combine(period.end + timedelta(days=1), time.min),
            )
        ).all()

        buckets: dict[date, Decimal] = {}
        cursor = bucket_start(period.start, period.slug)
        while cursor <= period.end:
            buckets[cursor] = Decimal("0")
            if period.slug == "daily":
                cursor += timedelta(days=1)
            elif period.slug == "weekly":
                cursor += timedelta(weeks=1)
            else:
                cursor = month_end(cursor) + timedelta(days=1)

        for occurred, amount in rows:
            key = bucket_start(occurred.date(), period.slug)
            buckets[key] = buckets.get(key, Decimal("0")) + Decimal(amount)

        return [{"date": key, "amount": buckets[key]} for key in sorted(buckets)]
