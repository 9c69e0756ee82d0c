"""Tests for the FastAPI routes."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mailhub.main import create_app
from mailhub.tools import build_tool_handlers
from tests.conftest import FakeProvider, make_message


@pytest.fixture
def client(settings, fake_factory):
    tools = build_tool_handlers(settings, provider_factory=fake_factory)
    with TestClient(create_app(settings, tools=tools)) as test_client:
        yield test_client


def add_account(client: TestClient, name: str = "Work") -> int:
    response = client.post("/api/email/accounts", json={
        "account_name": name,
        "email": f"{name.lower()}@example.com",
        "provider": "imap",
        "host": "imap.example.com",
        "port": 993,
        "username": "user",
        "password": "pw",
    })
    assert response.status_code == 200, response.text
    return response.json()["accountId"]


def test_health(client: TestClient) -> None:
    add_account(client)
    data = client.get("/api/health").json()
    assert data == {"status": "healthy", "accounts": 1, "active_accounts": 1}


def test_list_tools(client: TestClient) -> None:
    data = client.get("/api/tools").json()
    assert data["success"] is True
    assert "search_emails" in [t["name"] for t in data["tools"]]


def test_account_lifecycle(client: TestClient) -> None:
    account_id = add_account(client)

    listing = client.get("/api/email/accounts").json()
    assert listing["count"] == 1
    assert "pw" not in str(listing["accounts"][0].values())

    updated = client.put(f"/api/email/accounts/{account_id}", json={"default_mailbox": "Archive"})
    assert updated.json()["defaultMailbox"] == "Archive"

    assert client.post(f"/api/email/accounts/{account_id}/disable").json()["isActive"] is False
    assert client.get("/api/email/accounts").json()["count"] == 0
    assert client.get("/api/email/accounts", params={"include_inactive": True}).json()["count"] == 1
    assert client.post(f"/api/email/accounts/{account_id}/enable").json()["isActive"] is True

    assert client.delete(f"/api/email/accounts/{account_id}").json()["success"] is True
    assert client.get("/api/email/accounts").json()["count"] == 0


def test_error_status_codes(client: TestClient) -> None:
    """Core errors map to HTTP statuses with a typed error body."""
    missing = client.delete("/api/email/accounts/999")
    assert missing.status_code == 404
    assert missing.json()["success"] is False
    assert missing.json()["error_type"] == "NotFoundError"

    add_account(client, "Work")
    duplicate = client.post("/api/email/accounts", json={
        "account_name": "Work", "email": "x@example.com", "provider": "imap",
        "host": "h", "port": 993, "username": "u", "password": "p",
    })
    assert duplicate.status_code == 409
    assert duplicate.json()["error_type"] == "ConflictError"

    invalid = client.post("/api/email/accounts", json={
        "account_name": "NoHost", "email": "n@example.com", "provider": "imap",
    })
    assert invalid.status_code == 400
    assert invalid.json()["error_type"] == "ValidationError"

    too_many = client.post("/api/email/search", json={"query": "x", "max_results": 501})
    assert too_many.status_code == 400
    assert "cannot exceed 500" in too_many.json()["error"]


def test_search_without_accounts(client: TestClient) -> None:
    response = client.post("/api/email/search", json={"query": "x"})
    assert response.status_code == 404
    assert response.json()["error_type"] == "NoAccountsError"


def test_search_and_urgent(client: TestClient, fake_factory) -> None:
    add_account(client)
    fake_factory.providers["Work"] = FakeProvider(messages=[
        make_message("u1", "URGENT asap", is_read=False),
        make_message("p1", "Lunch"),
    ])

    results = client.post("/api/email/search", json={"query": "x", "min_urgency_score": 0.3}).json()
    assert [r["id"] for r in results["results"]] == ["u1"]

    urgent = client.get("/api/email/urgent", params={"max_results": 5, "only_unread": True}).json()
    assert [e["id"] for e in urgent["urgent"]["emails"]] == ["u1"]
    assert fake_factory.providers["Work"].urgent_calls == [10]


def test_tool_endpoint(client: TestClient) -> None:
    account_id = add_account(client)
    response = client.post("/api/tools/disable_email_account", json={"accountId": account_id})
    assert response.json()["message"] == 'Account "Work" has been disabled'

    unknown = client.post("/api/tools/nope", json={})
    assert unknown.status_code == 404


def test_uninitialized_service_returns_503(settings) -> None:
    app = create_app(settings)
    with TestClient(app) as test_client:
        app.state.tools = None
        assert test_client.get("/api/health").status_code == 503
