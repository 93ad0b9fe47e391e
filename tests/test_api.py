import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _register(client: TestClient, username: str) -> dict[str, str]:
    resp = client.post(
        "/api/auth/register",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "password": "secret1",
        },
    )
    assert resp.status_code == 201
    assert resp.json()["message"] == "Registration successful"
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def test_budget_follows_transaction_lifecycle(client: TestClient) -> None:
    headers = _register(client, "alice")

    resp = client.post(
        "/api/budgets",
        json={"category": "Food", "amount": "200.00", "month": 3, "year": 2024},
        headers=headers,
    )
    assert resp.status_code == 201
    assert resp.json()["spent"] == 0.0

    resp = client.post(
        "/api/transactions",
        json={
            "amount": 50,
            "description": "Lunch",
            "category": "Food",
            "type": "expense",
            "occurred_at": "2024-03-10T12:00:00",
        },
        headers=headers,
    )
    assert resp.status_code == 201
    txn_id = resp.json()["id"]

    budget = client.get("/api/budgets/month/3/year/2024", headers=headers).json()[0]
    assert budget["spent"] == 50.0
    assert budget["remaining"] == 150.0
    assert budget["percentage_used"] == 25.0

    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 204
    budget = client.get(f"/api/budgets/{budget['id']}", headers=headers).json()
    assert budget["spent"] == 0.0


def test_requests_without_valid_token_are_unauthorized(client: TestClient) -> None:
    resp = client.get("/api/budgets")
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == 401
    assert body["path"] == "/api/budgets"

    resp = client.get("/api/budgets", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_other_owners_records_are_not_found(client: TestClient) -> None:
    alice = _register(client, "alice")
    bob = _register(client, "bob")

    resp = client.post(
        "/api/transactions",
        json={
            "amount": "12.00",
            "description": "Taxi",
            "category": "Transportation",
            "type": "expense",
            "occurred_at": "2024-03-10T12:00:00",
        },
        headers=alice,
    )
    txn_id = resp.json()["id"]

    resp = client.get(f"/api/transactions/{txn_id}", headers=bob)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Transaction not found"


def test_error_envelopes(client: TestClient) -> None:
    headers = _register(client, "alice")

    resp = client.post(
        "/api/auth/register",
        json={"username": "alice", "email": "other@example.com", "password": "secret1"},
    )
    assert resp.status_code == 409

    resp = client.post("/api/auth/login", json={"username": "alice", "password": "bad"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid credentials"

    resp = client.post(
        "/api/transactions",
        json={
            "amount": -5,
            "description": "Refund",
            "category": "Food",
            "type": "expense",
            "occurred_at": "2024-03-10T12:00:00",
        },
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"
    assert "amount" in resp.json()["errors"]

    resp = client.get("/api/budgets/month/13/year/2024", headers=headers)
    assert resp.status_code == 400

    resp = client.get(
        "/api/transactions",
        params={"start": "2024-03-10T00:00:00"},
        headers=headers,
    )
    assert resp.status_code == 400

    resp = client.get("/api/goals", params={"status": "someday"}, headers=headers)
    assert resp.status_code == 400


def test_profile_categories_and_reconcile(client: TestClient) -> None:
    headers = _register(client, "alice")

    profile = client.get("/api/auth/profile", headers=headers).json()
    assert profile["username"] == "alice"

    resp = client.post(
        "/api/categories", json={"name": "Pets", "type": "expense"}, headers=headers
    )
    assert resp.status_code == 201
    categories = client.get("/api/categories", headers=headers).json()
    assert categories["expense"][-1] == "Pets"

    resp = client.post("/api/budgets/reconcile", headers=headers)
    assert resp.json() == {"reconciled": 0}


def test_range_and_year_edges_are_client_errors_or_succeed(client: TestClient) -> None:
    headers = _register(client, "alice")

    resp = client.post(
        "/api/budgets",
        json={"category": "Food", "amount": "10", "month": 12, "year": 9999},
        headers=headers,
    )
    assert resp.status_code == 201

    resp = client.post(
        "/api/budgets",
        json={"category": "Food", "amount": "10", "month": 12, "year": 10000},
        headers=headers,
    )
    assert resp.status_code == 400
    assert "year" in resp.json()["errors"]

    resp = client.get("/api/budgets/month/1/year/10000", headers=headers)
    assert resp.status_code == 400

    resp = client.get(
        "/api/transactions",
        params={"start": "2024-03-01T00:00:00Z", "end": "2024-03-31T00:00:00"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json() == []
