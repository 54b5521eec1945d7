"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against core integration workflows.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from advisorsync.api import create_app
from advisorsync.app import AppContext
from advisorsync.config import AppConfig

from conftest import USER_ID


HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def client(config: AppConfig, context: AppContext) -> TestClient:
    return TestClient(create_app(config, context))


def _connect(client: TestClient) -> dict:
    url = client.get("/integrations/microsoft/authorize", headers=HEADERS).json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]
    response = client.get("/integrations/oauth/callback", params={"code": "abc", "state": state})
    assert response.status_code == 200
    return response.json()


def test_api_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_api_requires_user_header(client: TestClient) -> None:
    assert client.get("/integrations").status_code == 401


def test_api_key_is_enforced_when_configured(config: AppConfig, context: AppContext) -> None:
    """Summary: Requests without the configured API key are rejected.

    Importance: Keeps private deployments closed to anonymous callers.
    Alternatives: Rely on network-level access control only.
    """

    secured = TestClient(create_app(replace(config, api_key="k"), context))
    assert secured.get("/integrations", headers=HEADERS).status_code == 401
    allowed = secured.get("/integrations", headers={**HEADERS, "X-API-Key": "k"})
    assert allowed.status_code == 200


def test_api_oauth_callback_hides_tokens(client: TestClient) -> None:
    """Summary: Verify the OAuth callback stores a connection without echoing tokens.

    Importance: Tokens must never leave the credential store.
    Alternatives: Return tokens to the frontend for storage.
    """

    connection = _connect(client)
    assert connection["status"] == "active"
    assert connection["provider"] == "microsoft"
    assert "access_token" not in connection
    assert "refresh_token" not in connection
    assert connection["has_refresh_token"] is True
    listed = client.get("/integrations", headers=HEADERS).json()
    assert [item["provider"] for item in listed] == ["microsoft"]


def test_api_sync_and_logs(client: TestClient, microsoft) -> None:
    _connect(client)
    microsoft.events = [
        {"id": "evt-1", "subject": "Review", "start": "2026-11-03T15:00:00Z", "end": "2026-11-03T16:00:00Z"}
    ]
    response = client.post("/integrations/microsoft/sync", json={"sync_type": "calendar"}, headers=HEADERS)
    assert response.status_code == 200
    log = response.json()
    assert log["status"] == "completed"
    assert log["items_created"] == 1

    logs = client.get("/integrations/sync-logs", params={"provider": "microsoft"}, headers=HEADERS).json()
    assert [item["id"] for item in logs] == [log["id"]]
    assert client.get(f"/integrations/sync-logs/{log['id']}", headers=HEADERS).json()["sync_type"] == "calendar"

    events = client.get("/calendar/events", headers=HEADERS).json()
    assert [item["external_id"] for item in events] == ["evt-1"]
    assert "raw_data" not in events[0]
    linked = client.post(
        f"/calendar/events/{events[0]['id']}/link", json={"household_id": "household-1"}, headers=HEADERS
    ).json()
    assert linked["linked_household_id"] == "household-1"


def test_api_error_mapping(client: TestClient) -> None:
    """Summary: Classified errors map onto stable HTTP status codes.

    Importance: Frontends branch on status codes rather than messages.
    Alternatives: Return 500 for every failure.
    """

    assert client.post("/integrations/yahoo/sync", json={}, headers=HEADERS).status_code == 400
    assert client.get("/integrations/microsoft", headers=HEADERS).status_code == 404
    assert client.get("/calendar/events/missing", headers=HEADERS).status_code == 404
    _connect(client)
    bad_settings = client.patch("/integrations/microsoft/settings", json={"unknown": True}, headers=HEADERS)
    assert bad_settings.status_code == 400
    client.delete("/integrations/microsoft", headers=HEADERS)
    inactive = client.post("/integrations/microsoft/sync", json={}, headers=HEADERS)
    assert inactive.status_code == 409
    assert inactive.json()["error"] == "IntegrationNotActive"


def test_api_event_lifecycle(client: TestClient, microsoft) -> None:
    _connect(client)
    created = client.post(
        "/calendar/microsoft/events",
        json={
            "subject": "Annual review",
            "start_time": "2026-11-03T15:00:00Z",
            "end_time": "2026-11-03T16:00:00Z",
            "attendees": [{"email": "dana.parker@example.org"}],
        },
        headers=HEADERS,
    )
    assert created.status_code == 201
    event_id = created.json()["id"]
    patched = client.patch(f"/calendar/events/{event_id}", json={"location": "Office"}, headers=HEADERS)
    assert patched.json()["location"] == "Office"
    assert client.delete(f"/calendar/events/{event_id}", headers=HEADERS).status_code == 204
    assert client.get("/calendar/events", headers=HEADERS).json() == []
    assert microsoft.events[0]["deleted"] is True


def test_api_email_workflow(client: TestClient, microsoft) -> None:
    _connect(client)
    microsoft.emails = [
        {
            "id": "msg-1",
            "conversation_id": "conv-1",
            "subject": "Roth conversion",
            "from": {"email": "dana.parker@example.org"},
            "received_at": "2026-10-14T13:05:00Z",
        }
    ]
    client.post("/integrations/microsoft/sync", json={"sync_type": "email"}, headers=HEADERS)

    emails = client.get("/emails", params={"search": "roth"}, headers=HEADERS).json()
    assert [item["external_id"] for item in emails] == ["msg-1"]
    threads = client.get("/emails/threads", headers=HEADERS).json()
    assert threads[0]["conversation_id"] == "conv-1"
    members = client.get("/emails/threads/conv-1", headers=HEADERS).json()
    assert [item["id"] for item in members] == [emails[0]["id"]]

    auto = client.post("/emails/auto-link", headers=HEADERS).json()
    assert auto["emails_linked"] == 1
    archived = client.post("/emails/archive", json={"email_ids": [emails[0]["id"]]}, headers=HEADERS)
    assert archived.json() == {"archived": 1}

    sent = client.post(
        "/emails/microsoft/send",
        json={"subject": "Recap", "body": "Thanks", "to": [{"email": "dana.parker@example.org"}]},
        headers=HEADERS,
    )
    assert sent.status_code == 201
    assert sent.json()["folder_name"] == "Sent Items"

    stats = client.get("/stats", headers=HEADERS).json()
    assert stats["total_emails"] == 2
    assert stats["client_emails"] == 1
