import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from auth import RATE_LIMITED, Decision, ExternalIdentity, SignedTokenIdentityProvider
from database import Base
from receipts import ReceiptScanner


class StaticModel:
    def __init__(self, text: str) -> None:
        self.text = text

    def extract_receipt(self, image_bytes, mime_type):
        return self.text


class DenyingGate:
    def __init__(self, reason: str) -> None:
        self.reason = reason

    def protect(self, user_key, requested=1):
        return Decision(allowed=False, reason=self.reason)


@pytest.fixture
def provider():
    return SignedTokenIdentityProvider(secret="test-secret")


@pytest.fixture
def client(provider):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_db
    main.app.dependency_overrides[main.get_identity_provider] = lambda: provider
    main.app.dependency_overrides[main.get_receipt_scanner] = lambda: ReceiptScanner(
        StaticModel("```json\n{}\n```")
    )
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def headers(provider):
    token = provider.issue(ExternalIdentity("user_1", "ada@example.com", "Ada"))
    return {"Authorization": f"Bearer {token}"}


def _create_account(client, headers, balance="500.00"):
    response = client.post(
        "/api/accounts", json={"name": "Main", "balance": balance}, headers=headers
    )
    assert response.status_code == 201
    return response.json()


def test_requests_without_identity_are_unauthorized(client):
    response = client.get("/api/accounts")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"

    response = client.get(
        "/api/accounts", headers={"Authorization": "Bearer forged"}
    )
    assert response.status_code == 401


def test_transaction_lifecycle_updates_balance(client, headers):
    account = _create_account(client, headers)
    assert account["is_default"] is True

    created = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "EXPENSE",
            "amount": "50.00",
            "date": "2024-01-15",
            "category": "food",
        },
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["balance"] == "450.00"
    txn_id = created.json()["data"]["id"]

    updated = client.put(
        f"/api/transactions/{txn_id}",
        json={
            "account_id": account["id"],
            "type": "INCOME",
            "amount": "50.00",
            "date": "2024-01-15",
            "category": "other-income",
        },
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["balance"] == "550.00"

    check = client.get(
        f"/api/accounts/{account['id']}/balance-check", headers=headers
    ).json()
    assert check["consistent"] is True

    deleted = client.delete(f"/api/transactions/{txn_id}", headers=headers)
    assert deleted.json()["balance"] == "500.00"
    assert client.get(f"/api/transactions/{txn_id}", headers=headers).status_code == 404


def test_invalid_category_and_negative_amount_are_rejected(client, headers):
    account = _create_account(client, headers)
    base = {
        "account_id": account["id"],
        "type": "EXPENSE",
        "amount": "10.00",
        "date": "2024-01-15",
        "category": "food",
    }
    response = client.post(
        "/api/transactions", json={**base, "category": "salary"}, headers=headers
    )
    assert response.status_code == 422
    response = client.post(
        "/api/transactions", json={**base, "amount": "-1.00"}, headers=headers
    )
    assert response.status_code == 422


def test_rate_limited_gate_returns_429(client, headers):
    account = _create_account(client, headers)
    main.app.dependency_overrides[main.get_security_gate] = lambda: DenyingGate(
        RATE_LIMITED
    )
    response = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "EXPENSE",
            "amount": "10.00",
            "date": "2024-01-15",
            "category": "food",
        },
        headers=headers,
    )
    assert response.status_code == 429
    assert response.json()["detail"] == "Too many requests. Please try again later."

    listing = client.get("/api/transactions", headers=headers).json()
    assert listing["items"] == []


def test_other_users_account_is_unauthorized(client, provider, headers):
    account = _create_account(client, headers)
    intruder = provider.issue(ExternalIdentity("user_2", "eve@example.com"))
    response = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "type": "EXPENSE",
            "amount": "10.00",
            "date": "2024-01-15",
            "category": "food",
        },
        headers={"Authorization": f"Bearer {intruder}"},
    )
    assert response.status_code == 401


def test_budget_progress(client, headers):
    account = _create_account(client, headers, balance="0")
    assert client.get("/api/budget", headers=headers).json() == {"budget": None}

    response = client.put("/api/budget", json={"amount": "200.00"}, headers=headers)
    assert response.json() == {"budget": "200.00"}

    body = client.get("/api/budget", headers=headers).json()
    assert body["budget"] == "200.00"
    assert body["account_id"] == account["id"]


def test_receipt_scan_without_data_asks_for_manual_entry(client, headers):
    response = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.jpg", b"\xff\xd8\xff", "image/jpeg")},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json() == {
        "data": None,
        "message": "No receipt data extracted, please enter manually",
    }


def test_receipt_scan_rejects_non_images(client, headers):
    response = client.post(
        "/api/receipts/scan",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "validation"


def test_lifespan_initializes_database_and_runs_scheduler(monkeypatch):
    calls = []
    monkeypatch.setattr(main, "init_db", lambda: calls.append("init_db"))
    monkeypatch.setattr(
        main.scheduler_manager, "start", lambda: calls.append("start")
    )
    monkeypatch.setattr(main.scheduler_manager, "stop", lambda: calls.append("stop"))

    with TestClient(main.app):
        assert calls == ["init_db", "start"]
    assert calls == ["init_db", "start", "stop"]
