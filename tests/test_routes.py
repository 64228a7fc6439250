"""HTTP-level tests for the fintrack API."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from fintrack.main import app
from fintrack.database import get_db
from fintrack.app.auth import create_access_token
from fintrack.app.dependencies import get_provider_client, get_sync_locks


@pytest.fixture
def api(db, provider_client, sync_locks):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_client] = lambda: provider_client
    app.dependency_overrides[get_sync_locks] = lambda: sync_locks
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id=1):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def connected(api, fake_provider):
    fake_provider.add_account("acc-1", 500.00, display_name="Current Account")
    fake_provider.add_transaction("acc-1", "tx-1", -42.50, "2024-01-15T10:00:00Z", "FOOD_AND_DRINK")
    response = api.post("/api/connections/callback", json={"code": "code-123", "state": "1"}, headers=auth())
    assert response.status_code == 200
    return response.json()


def test_health(api):
    assert api.get("/api/health").json() == {"status": "healthy"}


def test_requests_without_token_are_rejected(api):
    assert api.get("/api/accounts/").status_code == 401
    assert api.get("/api/accounts/", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_auth_url(api):
    response = api.get("/api/connections/auth-url", headers=auth(7))

    assert response.status_code == 200
    assert "state=7" in response.json()["auth_url"]


def test_callback_response_hides_tokens(connected):
    connection = connected["connection"]

    assert connection["status"] == "active"
    assert "access_token" not in connection
    assert "refresh_token" not in connection
    assert connected["accounts"][0]["account_type"] == "bank"


def test_callback_with_foreign_state_is_bad_request(api, fake_provider):
    response = api.post("/api/connections/callback", json={"code": "code-123", "state": "2"}, headers=auth())

    assert response.status_code == 400


def test_rejected_code_is_bad_gateway(api, fake_provider):
    fake_provider.token_status = 400

    response = api.post("/api/connections/callback", json={"code": "bad"}, headers=auth())

    assert response.status_code == 502
    assert "reconnect" in response.json()["detail"]


def test_sync_and_list_transactions(api, connected):
    connection_id = connected["connection"]["id"]

    response = api.post(
        f"/api/connections/{connection_id}/sync",
        json={"from_date": "2024-01-01", "to_date": "2024-01-31"},
        headers=auth()
    )
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert response.json()["transaction_count"] == 1

    listing = api.get("/api/transactions/", params={"category": "Food & Dining"}, headers=auth()).json()
    assert listing["total"] == 1
    assert Decimal(listing["transactions"][0]["amount"]) == Decimal("-42.50")

    logs = api.get(f"/api/connections/{connection_id}/sync-logs", headers=auth()).json()
    assert logs[0]["status"] == "success"
    assert logs[0]["from_date"] == "2024-01-01"
    assert logs[0]["to_date"] == "2024-01-31"


def test_sync_with_inverted_range_is_rejected(api, connected):
    connection_id = connected["connection"]["id"]

    response = api.post(
        f"/api/connections/{connection_id}/sync",
        json={"from_date": "2024-02-01", "to_date": "2024-01-01"},
        headers=auth()
    )

    assert response.status_code == 422


def test_other_users_connection_is_hidden(api, connected):
    connection_id = connected["connection"]["id"]

    assert api.get(f"/api/connections/{connection_id}", headers=auth(2)).status_code == 404
    assert api.get("/api/connections/", headers=auth(2)).json() == []


def test_disconnect_then_sync_is_refused(api, connected):
    connection_id = connected["connection"]["id"]

    response = api.post(f"/api/connections/{connection_id}/disconnect", headers=auth())
    assert response.json()["status"] == "revoked"

    assert api.post(f"/api/connections/{connection_id}/sync", headers=auth()).status_code == 400


def test_linked_account_cannot_be_deleted_until_disconnected(api, connected):
    connection_id = connected["connection"]["id"]
    account_id = connected["accounts"][0]["id"]

    assert api.delete(f"/api/accounts/{account_id}", headers=auth()).status_code == 409

    api.post(f"/api/connections/{connection_id}/disconnect", headers=auth())
    assert api.delete(f"/api/accounts/{account_id}", headers=auth()).status_code == 200


def test_linked_balance_is_not_editable(api, connected):
    account_id = connected["accounts"][0]["id"]

    response = api.put(f"/api/accounts/{account_id}", json={"balance": "1.00"}, headers=auth())
    assert response.status_code == 400

    response = api.put(f"/api/accounts/{account_id}", json={"name": "Bills"}, headers=auth())
    assert response.status_code == 200
    assert response.json()["name"] == "Bills"


def test_delete_connection_removes_data(api, connected):
    connection_id = connected["connection"]["id"]

    assert api.delete(f"/api/connections/{connection_id}", headers=auth()).status_code == 200
    assert api.get("/api/accounts/", headers=auth()).json() == []


def test_manual_transaction_lifecycle(api):
    account = api.post(
        "/api/accounts/", json={"name": "Wallet", "account_type": "cash", "balance": "100.00"}, headers=auth()
    ).json()

    created = api.post("/api/transactions/", json={
        "account_id": account["id"],
        "date": "2024-01-15",
        "amount": "10.00",
        "transaction_type": "expense",
        "category": "Groceries"
    }, headers=auth())
    assert created.status_code == 200
    transaction_id = created.json()["id"]
    assert Decimal(api.get(f"/api/accounts/{account['id']}", headers=auth()).json()["balance"]) == Decimal("90.00")

    updated = api.put(f"/api/transactions/{transaction_id}", json={"amount": "25.00"}, headers=auth())
    assert updated.status_code == 200
    assert Decimal(api.get(f"/api/accounts/{account['id']}", headers=auth()).json()["balance"]) == Decimal("75.00")

    assert api.delete(f"/api/transactions/{transaction_id}", headers=auth()).status_code == 200
    assert Decimal(api.get(f"/api/accounts/{account['id']}", headers=auth()).json()["balance"]) == Decimal("100.00")


def test_zero_amount_is_rejected(api):
    account = api.post("/api/accounts/", json={"name": "Wallet"}, headers=auth()).json()

    response = api.post("/api/transactions/", json={
        "account_id": account["id"],
        "date": "2024-01-15",
        "amount": "0",
        "transaction_type": "expense"
    }, headers=auth())

    assert response.status_code == 422


def test_synced_transaction_amount_is_read_only(api, connected):
    connection_id = connected["connection"]["id"]
    api.post(f"/api/connections/{connection_id}/sync",
             json={"from_date": "2024-01-01", "to_date": "2024-01-31"}, headers=auth())
    transaction_id = api.get("/api/transactions/", headers=auth()).json()["transactions"][0]["id"]

    response = api.put(f"/api/transactions/{transaction_id}", json={"amount": "1.00"}, headers=auth())
    assert response.status_code == 409

    response = api.put(f"/api/transactions/{transaction_id}", json={"notes": "team lunch"}, headers=auth())
    assert response.status_code == 200
    assert response.json()["notes"] == "team lunch"
