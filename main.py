import logging
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Response
from sqlalchemy.orm import Session

from auth import InvalidTokenError, user_id_from_header
from config import get_settings
from database import get_session_factory
from fx_rates import SUPPORTED_CURRENCIES
from models import PaymentStatus
from periods import resolve_chart_range
from providers import KNOWN_PROVIDERS
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    ChartOut,
    DashboardSummaryOut,
    ExchangeRateIn,
    ExchangeRateOut,
    OccurrenceOut,
    PaymentOut,
    PayOccurrenceIn,
    PayResultOut,
    SubscriptionIn,
    SubscriptionOut,
    SubscriptionSummaryOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AlreadyPaidError,
    CalculationMismatchError,
    DashboardService,
    ExchangeRateService,
    NotFoundError,
    PaymentService,
    ReconciliationFailedError,
    ReconciliationService,
    SubscriptionService,
    TransactionLockedError,
    TransactionService,
    percent_change,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Subscription Tracker")


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def current_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    try:
        return user_id_from_header(authorization)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "subscriptions",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/api/meta")
def api_meta(user_id: str = Depends(current_user_id)):
    return {
        "reporting_currency": get_settings().reporting_currency,
        "currencies": list(SUPPORTED_CURRENCIES),
        "providers": [{"name": p.name, "logo": p.logo} for p in KNOWN_PROVIDERS],
    }


# Subscriptions


@app.get("/api/subscriptions", response_model=list[SubscriptionOut])
def list_subscriptions(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return SubscriptionService(db, user_id).list()


@app.post("/api/subscriptions", response_model=SubscriptionOut, status_code=201)
def create_subscription(
    data: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return SubscriptionService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/subscriptions/summary", response_model=SubscriptionSummaryOut)
def subscription_summary(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return SubscriptionService(db, user_id).summary()


@app.get("/api/subscriptions/unpaid")
def unpaid_subscriptions(
    horizon: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    service = PaymentService(db, user_id)
    occurrences = service.list_unpaid_occurrences(horizon)
    today = local_today()
    return {
        "data": occurrences,
        "summary": service.payment_summary(today, occurrences),
    }


@app.get("/api/subscriptions/occurrences", response_model=list[OccurrenceOut])
def subscription_occurrences(
    horizon: Optional[date] = Query(default=None),
    status: Optional[PaymentStatus] = Query(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return PaymentService(db, user_id).list_occurrences(horizon, status)


@app.post(
    "/api/subscriptions/payments/{payment_id}/pay",
    response_model=PayResultOut,
    status_code=201,
)
def pay_subscription(
    payment_id: int,
    payload: Optional[PayOccurrenceIn] = Body(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        txn, payment = PaymentService(db, user_id).pay(payment_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AlreadyPaidError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except CalculationMismatchError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ReconciliationFailedError as exc:
        raise HTTPException(
            status_code=500,
            detail={
                "error": "reconciliation_failed",
                "message": str(exc),
                "payment_id": exc.payment_id,
                "transaction_id": exc.transaction_id,
            },
        ) from exc
    return PayResultOut(
        transaction=TransactionOut.model_validate(txn),
        payment=PaymentOut.model_validate(payment),
    )


@app.get("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return SubscriptionService(db, user_id).get(subscription_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def update_subscription(
    subscription_id: int,
    data: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return SubscriptionService(db, user_id).update(subscription_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def delete_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        SubscriptionService(db, user_id).delete(subscription_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/subscriptions/{subscription_id}/projection")
def subscription_projection(
    subscription_id: int,
    horizon: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        dates = SubscriptionService(db, user_id).projection(subscription_id, horizon)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"subscription_id": subscription_id, "dates": dates}


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None),
    sort: Literal["date", "amount"] = Query(default="date"),
    direction: Literal["asc", "desc"] = Query(default="desc"),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    offset = (page - 1) * limit
    return TransactionService(db, user_id).list(
        limit=limit, offset=offset, search=search, sort=sort, direction=direction
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return TransactionService(db, user_id).create(data)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransactionLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransactionLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


# Exchange rates


@app.get("/api/exchange-rates", response_model=list[ExchangeRateOut])
def list_exchange_rates(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return ExchangeRateService(db).list()


@app.put("/api/exchange-rates", response_model=ExchangeRateOut)
def upsert_exchange_rate(
    data: ExchangeRateIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return ExchangeRateService(db).upsert(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# Dashboard


@app.get("/api/dashboard/summary")
def dashboard_summary(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    summary = DashboardSummaryOut(**DashboardService(db, user_id).summary())
    return {
        "data": summary,
        "changes": {
            "daily": percent_change(summary.spent_today, summary.spent_yesterday),
            "weekly": percent_change(summary.spent_this_week, summary.spent_last_week),
            "monthly": percent_change(
                summary.spent_this_month, summary.spent_last_month
            ),
        },
    }


@app.get("/api/dashboard/chart", response_model=ChartOut)
def dashboard_chart(
    period: str = Query(default="daily"),
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        window = resolve_chart_range(period, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    points = DashboardService(db, user_id).chart(window)
    return ChartOut(data=points, period=window.slug, start=window.start, end=window.end)


# Reconciliation


@app.post("/api/reconciliation/sweep")
def reconciliation_sweep(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    orphans = ReconciliationService(db, user_id).sweep()
    return {
        "orphaned_transactions": [TransactionOut.model_validate(t) for t in orphans]
    }
