from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from auth import generate_access_token
from database import Base, build_engine, create_session_factory
from main import app, get_db


@pytest.fixture
def client():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestingSession = create_session_factory(engine=engine)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _auth(user_id: str = "user-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {generate_access_token(user_id)}"}


def _create_netflix(client, user_id: str = "user-1") -> dict:
    response = client.post(
        "/api/subscriptions",
        json={
            "provider_name": "netflix",
            "amount": "169000",
            "currency": "IDR",
            "frequency": "monthly",
            "anchor_payment_date": "2025-01-31",
        },
        headers=_auth(user_id),
    )
    assert response.status_code == 201
    return response.json()


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/subscriptions").status_code == 401
    bad = client.get(
        "/api/subscriptions", headers={"Authorization": "Bearer not-a-token"}
    )
    assert bad.status_code == 401


def test_meta_lists_currencies_and_providers(client):
    body = client.get("/api/meta", headers=_auth()).json()
    assert body["reporting_currency"] == "IDR"
    assert "USD" in body["currencies"]
    assert {"name": "Netflix", "logo": "/netflix.svg"} in body["providers"]


def test_create_and_list_subscriptions(client):
    created = _create_netflix(client)
    assert created["provider_name"] == "Netflix"

    listed = client.get("/api/subscriptions", headers=_auth()).json()
    assert [s["id"] for s in listed] == [created["id"]]
    assert client.get("/api/subscriptions", headers=_auth("user-2")).json() == []

    projection = client.get(
        f"/api/subscriptions/{created['id']}/projection",
        params={"horizon": "2025-03-31"},
        headers=_auth(),
    ).json()
    assert projection["dates"] == ["2025-01-31", "2025-02-28", "2025-03-31"]


def test_invalid_subscription_is_unprocessable(client):
    response = client.post(
        "/api/subscriptions",
        json={
            "provider_name": "Netflix",
            "amount": "-5",
            "currency": "IDR",
            "frequency": "monthly",
            "anchor_payment_date": "2025-01-31",
        },
        headers=_auth(),
    )
    assert response.status_code == 422


def test_pay_flow(client):
    _create_netflix(client)

    unpaid = client.get(
        "/api/subscriptions/unpaid",
        params={"horizon": "2025-03-31"},
        headers=_auth(),
    ).json()
    assert [o["projected_payment_date"] for o in unpaid["data"]] == [
        "2025-01-31",
        "2025-02-28",
        "2025-03-31",
    ]
    assert unpaid["summary"]["unpaid_count"] == 3
    payment_id = unpaid["data"][1]["payment_id"]

    other = client.post(
        f"/api/subscriptions/payments/{payment_id}/pay", headers=_auth("user-2")
    )
    assert other.status_code == 404

    paid = client.post(
        f"/api/subscriptions/payments/{payment_id}/pay",
        json={"amount": "50000", "category": "Entertainment"},
        headers=_auth(),
    )
    assert paid.status_code == 201
    body = paid.json()
    assert Decimal(body["transaction"]["amount"]) == Decimal("50000")
    assert body["transaction"]["category"] == "Entertainment"
    assert body["payment"]["payment_status"] == "paid"
    assert body["payment"]["transaction_id"] == body["transaction"]["id"]

    again = client.post(
        f"/api/subscriptions/payments/{payment_id}/pay", headers=_auth()
    )
    assert again.status_code == 409

    transactions = client.get("/api/transactions", headers=_auth()).json()
    assert len(transactions) == 1
    assert transactions[0]["origin_payment_id"] == payment_id

    remaining = client.get(
        "/api/subscriptions/unpaid",
        params={"horizon": "2025-03-31"},
        headers=_auth(),
    ).json()
    assert payment_id not in [o["payment_id"] for o in remaining["data"]]


def test_pay_unknown_payment_is_not_found(client):
    response = client.post("/api/subscriptions/payments/404/pay", headers=_auth())
    assert response.status_code == 404


def test_exchange_rates_feed_summary(client):
    response = client.put(
        "/api/exchange-rates",
        json={"base_currency": "usd", "rate": "16000"},
        headers=_auth(),
    )
    assert response.status_code == 200
    assert response.json()["base_currency"] == "USD"

    rejected = client.put(
        "/api/exchange-rates",
        json={"base_currency": "IDR", "rate": "1"},
        headers=_auth(),
    )
    assert rejected.status_code == 400

    client.post(
        "/api/subscriptions",
        json={
            "provider_name": "ChatGPT Plus",
            "amount": "20",
            "currency": "USD",
            "frequency": "monthly",
            "anchor_payment_date": "2025-01-05",
        },
        headers=_auth(),
    )
    summary = client.get("/api/subscriptions/summary", headers=_auth()).json()
    assert Decimal(summary["monthly_recurring_total"]) == Decimal("320000")
    assert summary["degraded"] is False


def test_dashboard_chart_rejects_unknown_period(client):
    response = client.get(
        "/api/dashboard/chart", params={"period": "yearly"}, headers=_auth()
    )
    assert response.status_code == 400

    ok = client.get(
        "/api/dashboard/chart",
        params={"period": "daily", "start": "2025-05-01", "end": "2025-05-03"},
        headers=_auth(),
    )
    assert ok.status_code == 200
    assert [p["date"] for p in ok.json()["data"]] == [
        "2025-05-01",
        "2025-05-02",
        "2025-05-03",
    ]


def test_dashboard_summary_reports_changes(client):
    response = client.get("/api/dashboard/summary", headers=_auth())
    assert response.status_code == 200
    body = response.json()
    assert body["changes"] == {"daily": None, "weekly": None, "monthly": None}


def test_sweep_endpoint_returns_orphans(client):
    response = client.post("/api/reconciliation/sweep", headers=_auth())
    assert response.status_code == 200
    assert response.json() == {"orphaned_transactions": []}


def test_payment_transaction_is_protected(client):
    _create_netflix(client)
    unpaid = client.get(
        "/api/subscriptions/unpaid",
        params={"horizon": "2025-01-31"},
        headers=_auth(),
    ).json()
    paid = client.post(
        f"/api/subscriptions/payments/{unpaid['data'][0]['payment_id']}/pay",
        headers=_auth(),
    ).json()
    txn = paid["transaction"]

    deleted = client.delete(f"/api/transactions/{txn['id']}", headers=_auth())
    assert deleted.status_code == 409

    relabelled = client.put(
        f"/api/transactions/{txn['id']}",
        json={
            "amount": txn["amount"],
            "category": "Streaming",
            "note": txn["note"],
            "date": txn["date"],
        },
        headers=_auth(),
    )
    assert relabelled.status_code == 200
    assert relabelled.json()["category"] == "Streaming"

    repriced = client.put(
        f"/api/transactions/{txn['id']}",
        json={
            "amount": "1",
            "category": "Streaming",
            "note": txn["note"],
            "date": txn["date"],
        },
        headers=_auth(),
    )
    assert repriced.status_code == 409

    occurrences = client.get(
        "/api/subscriptions/occurrences",
        params={"horizon": "2025-01-31", "status": "paid"},
        headers=_auth(),
    ).json()
    assert occurrences[0]["transaction_id"] == txn["id"]


def test_transactions_crud_with_search_and_sort(client):
    for amount, note, when in (
        ("15000", "Kopi Kenangan", "2025-05-01T08:00:00"),
        ("250000", "Groceries", "2025-05-03T17:00:00"),
        ("32000", "kopi susu", "2025-05-02T09:00:00"),
    ):
        response = client.post(
            "/api/transactions",
            json={"amount": amount, "category": "Food", "note": note, "date": when},
            headers=_auth(),
        )
        assert response.status_code == 201

    found = client.get(
        "/api/transactions",
        params={"search": "kopi", "sort": "amount", "direction": "desc"},
        headers=_auth(),
    ).json()
    assert [t["note"] for t in found] == ["kopi susu", "Kopi Kenangan"]

    bad_sort = client.get(
        "/api/transactions", params={"sort": "category"}, headers=_auth()
    )
    assert bad_sort.status_code == 422

    target = found[0]["id"]
    updated = client.put(
        f"/api/transactions/{target}",
        json={
            "amount": "35000",
            "category": "Coffee",
            "note": "kopi susu gula aren",
            "date": "2025-05-02T09:00:00",
        },
        headers=_auth(),
    )
    assert updated.status_code == 200
    assert Decimal(updated.json()["amount"]) == Decimal("35000")

    assert client.put(
        f"/api/transactions/{target}",
        json={"amount": "1", "category": "Coffee", "date": "2025-05-02T09:00:00"},
        headers=_auth("user-2"),
    ).status_code == 404
    assert client.delete(f"/api/transactions/{target}", headers=_auth()).status_code == 204
    assert len(client.get("/api/transactions", headers=_auth()).json()) == 2
