"""Summary: Tests for provider clients and payload parsing.

Importance: Ensures Graph and Google payloads normalize into the same mirrored fields.
Alternatives: Rely on live sandbox accounts for provider coverage.
"""

from __future__ import annotations

import base64
import io
import json
import urllib.error
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from advisorsync.errors import (
    InvalidRequest,
    ProviderAuthRevoked,
    ProviderCatastrophicError,
    ProviderTransientError,
    UnsupportedProvider,
)
from advisorsync.google_workspace import GoogleWorkspaceClient, _parse_gmail_message, _parse_google_event
from advisorsync.microsoft_graph import MicrosoftGraphClient, _parse_graph_event, _parse_graph_message
from advisorsync.models import (
    Connection,
    ConnectionSettings,
    ConnectionStatus,
    EmailAddress,
    EmailDraft,
    Provider,
    RemoteEvent,
)
from advisorsync.providers import MockProviderClient, ProviderRegistry, provider_request

from conftest import build_config


def _connection(provider: Provider, settings: ConnectionSettings | None = None) -> Connection:
    now = datetime(2026, 10, 19, tzinfo=timezone.utc)
    return Connection(
        id="conn-1",
        user_id="advisor-1",
        provider=provider,
        status=ConnectionStatus.ACTIVE,
        access_token="access",
        refresh_token="refresh",
        token_expires_at=None,
        scopes=[],
        settings=settings or ConnectionSettings(),
        external_email="advisor@example.com",
        last_sync_at=None,
        last_sync_error=None,
        created_at=now,
        updated_at=now,
    )


def test_parse_graph_event_normalizes_nested_fields() -> None:
    """Summary: Verify Graph event parsing maps attendees and meeting links.

    Importance: Graph nests most fields one level deeper than the mirror.
    Alternatives: Store the raw Graph payload only.
    """

    fields = _parse_graph_event(
        {
            "id": "AAMk-1",
            "subject": "Review",
            "start": {"dateTime": "2026-11-03T15:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2026-11-03T16:00:00.0000000", "timeZone": "UTC"},
            "location": {"displayName": "Office"},
            "onlineMeeting": {"joinUrl": "https://teams.example/join"},
            "organizer": {"emailAddress": {"address": "advisor@example.com"}},
            "attendees": [
                {
                    "emailAddress": {"address": "advisor@example.com", "name": "Advisor"},
                    "status": {"response": "Organizer"},
                },
                {
                    "emailAddress": {"address": "dana.parker@example.org", "name": "Dana"},
                    "status": {"response": "Accepted"},
                },
            ],
        }
    )
    assert fields.start_time == datetime(2026, 11, 3, 15, 0, tzinfo=timezone.utc)
    assert fields.location == "Office"
    assert fields.online_meeting_url == "https://teams.example/join"
    assert [(item.email, item.response, item.is_organizer) for item in fields.attendees] == [
        ("advisor@example.com", "organizer", True),
        ("dana.parker@example.org", "accepted", False),
    ]


def test_parse_graph_message_basic_fields() -> None:
    fields = _parse_graph_message(
        {
            "id": "msg-1",
            "conversationId": "conv-1",
            "subject": "",
            "body": {"contentType": "HTML", "content": "<p>Hello</p>"},
            "bodyPreview": "Hello",
            "from": {"emailAddress": {"address": "dana.parker@example.org", "name": "Dana"}},
            "toRecipients": [{"emailAddress": {"address": "advisor@example.com"}}],
            "receivedDateTime": "2026-10-14T13:05:00Z",
            "isRead": True,
            "importance": "High",
        }
    )
    assert fields.subject == "(No Subject)"
    assert fields.sender == EmailAddress(email="dana.parker@example.org", name="Dana")
    assert fields.body_content_type == "html"
    assert fields.importance == "high"
    assert fields.is_read is True


def test_graph_fetch_follows_pages_and_flags_removals(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pages = {
        "first": {
            "value": [{"id": "evt-1", "lastModifiedDateTime": "2026-10-15T09:00:00Z"}],
            "@odata.nextLink": "https://graph.example/v1.0/me/events?page=2",
        },
        "second": {"value": [{"id": "evt-2", "@removed": {"reason": "deleted"}}]},
    }
    requested: list[str] = []
    preferences: set[str] = set()

    def _fake_request(url: str, token: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        requested.append(url)
        preferences.add(kwargs["headers"]["Prefer"])
        return pages["second"] if "page=2" in url else pages["first"]

    monkeypatch.setattr("advisorsync.microsoft_graph.provider_request", _fake_request)
    client = MicrosoftGraphClient(build_config(tmp_path))
    since = datetime(2026, 10, 1, tzinfo=timezone.utc)
    items = client.fetch_changed_calendar_events(_connection(Provider.MICROSOFT), since)

    assert [(item.external_id, item.deleted) for item in items] == [("evt-1", False), ("evt-2", True)]
    assert items[0].modified_at == datetime(2026, 10, 15, 9, 0, tzinfo=timezone.utc)
    assert "lastModifiedDateTime+ge+2026-10-01T00%3A00%3A00Z" in requested[0]
    assert len(requested) == 2
    assert preferences == {'IdType="ImmutableId", outlook.timezone="UTC"'}


def test_graph_push_email_creates_then_sends(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str]] = []
    preferences: list[str] = []

    def _fake_request(url: str, token: str, method: str = "GET", body: Any = None, **kwargs: Any) -> dict[str, Any]:
        calls.append((method, url))
        preferences.append((kwargs.get("headers") or {}).get("Prefer", ""))
        return {"id": "draft-1"} if url.endswith("/me/messages") else {}

    monkeypatch.setattr("advisorsync.microsoft_graph.provider_request", _fake_request)
    client = MicrosoftGraphClient(build_config(tmp_path))
    draft = EmailDraft(subject="Recap", body="Thanks", to=[EmailAddress(email="dana.parker@example.org")])

    assert client.push_email(_connection(Provider.MICROSOFT), draft) == "draft-1"
    assert calls == [
        ("POST", "https://graph.example/v1.0/me/messages"),
        ("POST", "https://graph.example/v1.0/me/messages/draft-1/send"),
    ]
    # The draft id must survive the move to Sent Items.
    assert all('IdType="ImmutableId"' in value for value in preferences)


def test_parse_google_event_all_day() -> None:
    fields = _parse_google_event(
        {
            "id": "g-1",
            "summary": "Planning day",
            "start": {"date": "2026-11-10"},
            "end": {"date": "2026-11-11"},
            "hangoutLink": "https://meet.example/abc",
            "attendees": [{"email": "lee.nguyen@example.org", "responseStatus": "needsAction"}],
        }
    )
    assert fields.is_all_day is True
    assert fields.start_time == datetime(2026, 11, 10, tzinfo=timezone.utc)
    assert fields.online_meeting_url == "https://meet.example/abc"
    assert fields.attendees[0].response == "none"


def test_parse_gmail_message_prefers_plain_text() -> None:
    """Summary: Verify Gmail parsing reads headers, labels, and plain text parts.

    Importance: Gmail carries most message metadata in headers and labels.
    Alternatives: Parse the raw RFC 822 message instead.
    """

    encoded = base64.urlsafe_b64encode(b"Plain body").decode("utf-8").rstrip("=")
    html = base64.urlsafe_b64encode(b"<p>Html body</p>").decode("utf-8")
    fields = _parse_gmail_message(
        {
            "id": "gm-1",
            "threadId": "thread-1",
            "internalDate": "1792000000000",
            "labelIds": ["INBOX", "UNREAD", "IMPORTANT", "Label_7"],
            "payload": {
                "headers": [
                    {"name": "From", "value": "Dana Parker <dana.parker@example.org>"},
                    {"name": "To", "value": "advisor@example.com, Lee <lee.nguyen@example.org>"},
                    {"name": "Subject", "value": "Statements"},
                ],
                "parts": [
                    {"mimeType": "text/html", "body": {"data": html}},
                    {"mimeType": "text/plain", "body": {"data": encoded}},
                    {
                        "mimeType": "application/pdf",
                        "filename": "statement.pdf",
                        "body": {"attachmentId": "att-1", "size": 1200},
                    },
                ],
            },
        }
    )
    assert fields.body == "Plain body"
    assert fields.sender == EmailAddress(email="dana.parker@example.org", name="Dana Parker")
    assert [item.email for item in fields.to] == ["advisor@example.com", "lee.nguyen@example.org"]
    assert fields.conversation_id == "thread-1"
    assert (fields.is_read, fields.importance, fields.folder_name) == (False, "high", "Inbox")
    assert fields.categories == ["Label_7"]
    assert fields.has_attachments is True
    assert fields.attachments[0].name == "statement.pdf"


def test_google_fetch_emails_loads_each_message(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    requested: list[str] = []

    def _fake_request(url: str, token: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        requested.append(url)
        if "format=full" in url:
            return {"id": url.split("/messages/")[1].split("?")[0], "payload": {}}
        return {"messages": [{"id": "gm-1"}, {"id": "gm-2"}]}

    monkeypatch.setattr("advisorsync.google_workspace.provider_request", _fake_request)
    client = GoogleWorkspaceClient(build_config(tmp_path))
    items = client.fetch_changed_emails(_connection(Provider.GOOGLE), None)

    assert [item.external_id for item in items] == ["gm-1", "gm-2"]
    assert all(item.modified_at is None for item in items)
    assert requested[0].startswith("https://gmail.example/v1/users/me/messages?")
    assert len(requested) == 3


def test_provider_request_maps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: HTTP failures map onto the sync error taxonomy.

    Importance: The engine decides between per-item and run-level failure by error class.
    Alternatives: Inspect status codes inside the engine.
    """

    status = {"code": 401}

    def _fail(request: Any, timeout: int = 0) -> Any:
        raise urllib.error.HTTPError(request.full_url, status["code"], "error", {}, io.BytesIO(b"{}"))

    monkeypatch.setattr("urllib.request.urlopen", _fail)
    with pytest.raises(ProviderAuthRevoked):
        provider_request("https://graph.example/me/events", "token")
    status["code"] = 503
    with pytest.raises(ProviderCatastrophicError):
        provider_request("https://graph.example/me/events", "token")
    with pytest.raises(ProviderTransientError):
        provider_request("https://graph.example/me/events", "token", "POST", {}, phase="push")
    status["code"] = 400
    with pytest.raises(InvalidRequest):
        provider_request("https://graph.example/me/events", "token", "POST", {}, phase="push")


def test_mock_provider_filters_by_folder_and_since(tmp_path: Path) -> None:
    fixture_dir = tmp_path / "fixtures"
    fixture_dir.mkdir()
    (fixture_dir / "mock_emails.json").write_text(
        json.dumps(
            [
                {"id": "m-1", "folder": "Inbox", "modified_at": "2026-10-10T00:00:00Z"},
                {"id": "m-2", "folder": "Archive", "modified_at": "2026-10-12T00:00:00Z"},
                {"id": "m-3", "folder": "Inbox", "modified_at": "2026-10-12T00:00:00Z"},
            ]
        ),
        encoding="utf-8",
    )
    client = MockProviderClient.from_fixtures(Provider.GOOGLE, fixture_dir)
    connection = _connection(Provider.GOOGLE, ConnectionSettings(email_folder_ids=["Inbox"]))
    since = datetime(2026, 10, 11, tzinfo=timezone.utc)

    assert [item.external_id for item in client.fetch_changed_emails(connection, since)] == ["m-3"]
    assert client.fetch_changed_calendar_events(connection, None) == []


def test_mock_parse_event_rejects_missing_fields() -> None:
    client = MockProviderClient(Provider.MICROSOFT)
    with pytest.raises(KeyError):
        client.parse_event(RemoteEvent(external_id="evt-1", payload={"subject": "No times"}))


def test_registry_rejects_unregistered_provider() -> None:
    registry = ProviderRegistry({Provider.MICROSOFT: MockProviderClient(Provider.MICROSOFT)})
    assert registry.providers() == [Provider.MICROSOFT]
    with pytest.raises(UnsupportedProvider):
        registry.get(Provider.GOOGLE)
