"""Summary: Provider client interface, registry, and mock implementation.

Importance: Keeps reconciliation independent of any concrete mailbox or calendar API.
Alternatives: Call provider SDKs directly from the sync engine.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any
import urllib.error
import urllib.request

from advisorsync.errors import (
    AuthenticationFailed,
    InvalidRequest,
    NotFound,
    ProviderAuthRevoked,
    ProviderCatastrophicError,
    ProviderTransientError,
    UnsupportedProvider,
)
from advisorsync.models import (
    Attachment,
    Attendee,
    Connection,
    EmailAddress,
    EmailDraft,
    EmailFields,
    EventDraft,
    EventFields,
    Provider,
    RemoteEmail,
    RemoteEvent,
    TokenGrant,
    parse_timestamp,
    utcnow,
)


logger = logging.getLogger(__name__)


class ProviderClient(ABC):
    """Summary: Abstract interface for one mailbox/calendar provider.

    Importance: The single seam a real provider implementation plugs into.
    Alternatives: Separate email and calendar provider hierarchies.
    """

    provider: Provider

    @abstractmethod
    def exchange_code(self, code: str) -> TokenGrant:
        """Summary: Exchange an authorization code for tokens.

        Importance: Completes the OAuth redirect round-trip.
        Alternatives: Delegate to an external auth service.
        """

    @abstractmethod
    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        """Summary: Obtain a fresh access token from a refresh token.

        Importance: Keeps connections ACTIVE past access token expiry.
        Alternatives: Force a new consent flow on expiry.
        """

    @abstractmethod
    def fetch_changed_calendar_events(
        self, connection: Connection, since: datetime | None
    ) -> list[RemoteEvent]:
        """Summary: Fetch calendar items changed since a timestamp.

        Importance: Feeds calendar reconciliation.
        Alternatives: Fetch a fixed date window every time.
        """

    @abstractmethod
    def fetch_changed_emails(self, connection: Connection, since: datetime | None) -> list[RemoteEmail]:
        """Summary: Fetch messages changed since a timestamp.

        Importance: Feeds email reconciliation.
        Alternatives: Fetch the newest N messages every time.
        """

    @abstractmethod
    def push_event(self, connection: Connection, draft: EventDraft) -> str:
        """Summary: Create or update a remote event and return its external id.

        Importance: Outbound half of calendar sync.
        Alternatives: Queue outbound changes for a background worker.
        """

    @abstractmethod
    def push_email(self, connection: Connection, draft: EmailDraft) -> str:
        """Summary: Send a message and return its external id.

        Importance: Outbound half of email sync.
        Alternatives: Send through SMTP outside the provider.
        """

    @abstractmethod
    def remove_event(self, connection: Connection, external_id: str) -> None:
        """Summary: Delete a remote event.

        Importance: Propagates CRM-side deletes when outbound sync is enabled.
        Alternatives: Leave remote events untouched on local delete.
        """

    def parse_event(self, remote: RemoteEvent) -> EventFields:
        """Summary: Turn an event envelope into mirrored fields.

        Importance: Raises KeyError/ValueError on malformed payloads so the item fails alone.
        Alternatives: Validate inside the fetch call.
        """

        payload = remote.payload
        start_time = parse_timestamp(payload["start"])
        end_time = parse_timestamp(payload["end"])
        if start_time is None or end_time is None:
            raise ValueError("event start and end are required")
        return EventFields(
            subject=str(payload["subject"]),
            start_time=start_time,
            end_time=end_time,
            body=payload.get("body"),
            location=payload.get("location"),
            is_all_day=bool(payload.get("is_all_day", False)),
            online_meeting_url=payload.get("online_meeting_url"),
            attendees=[
                Attendee(
                    email=item["email"],
                    name=item.get("name"),
                    response=item.get("response", "none"),
                    is_organizer=bool(item.get("is_organizer", False)),
                )
                for item in payload.get("attendees", [])
            ],
        )

    def parse_email(self, remote: RemoteEmail) -> EmailFields:
        payload = remote.payload
        received_at = parse_timestamp(payload["received_at"])
        if received_at is None:
            raise ValueError("email received_at is required")
        body = payload.get("body")
        return EmailFields(
            subject=payload.get("subject") or "(No Subject)",
            sender=_address(payload["from"]),
            received_at=received_at,
            conversation_id=payload.get("conversation_id"),
            body=body,
            body_preview=payload.get("body_preview") or (body[:200] if body else None),
            body_content_type=payload.get("body_content_type", "html"),
            to=[_address(item) for item in payload.get("to", [])],
            cc=[_address(item) for item in payload.get("cc", [])],
            sent_at=parse_timestamp(payload.get("sent_at")),
            is_read=bool(payload.get("is_read", False)),
            has_attachments=bool(payload.get("attachments")),
            attachments=[
                Attachment(
                    id=item["id"],
                    name=item["name"],
                    content_type=item.get("content_type", "application/octet-stream"),
                    size=int(item.get("size", 0)),
                )
                for item in payload.get("attachments", [])
            ],
            importance=payload.get("importance", "normal"),
            folder_name=payload.get("folder"),
            categories=list(payload.get("categories", [])),
        )


class ProviderRegistry:
    """Summary: Maps providers to their client implementations.

    Importance: Unknown providers fail with UnsupportedProvider in one place.
    Alternatives: Branch on provider names throughout the services.
    """

    def __init__(self, clients: dict[Provider, ProviderClient] | None = None) -> None:
        self._clients: dict[Provider, ProviderClient] = dict(clients or {})

    def register(self, provider: Provider, client: ProviderClient) -> None:
        self._clients[provider] = client

    def get(self, provider: Provider | str) -> ProviderClient:
        resolved = Provider.parse(provider)
        client = self._clients.get(resolved)
        if client is None:
            raise UnsupportedProvider(f"Provider {resolved.value} has no registered client")
        return client

    def providers(self) -> list[Provider]:
        return sorted(self._clients, key=lambda item: item.value)


class MockProviderClient(ProviderClient):
    """Summary: In-memory provider backed by JSON-style payloads.

    Importance: Supports offline demos and deterministic tests of reconciliation.
    Alternatives: Record and replay real provider traffic.
    """

    def __init__(
        self,
        provider: Provider,
        events: list[dict[str, Any]] | None = None,
        emails: list[dict[str, Any]] | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        """Summary: Initialize the mock provider with seed payloads.

        Importance: Allows tests to shape exactly what a sync run sees.
        Alternatives: Load payloads lazily from disk on each fetch.
        """

        self.provider = provider
        self.events: list[dict[str, Any]] = list(events or [])
        self.emails: list[dict[str, Any]] = list(emails or [])
        self.scopes = scopes or ["Calendars.ReadWrite", "Mail.ReadWrite", "Mail.Send"]
        self.exchange_calls = 0
        self.refresh_calls = 0
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    @classmethod
    def from_fixtures(cls, provider: Provider, fixture_dir: Path) -> "MockProviderClient":
        """Summary: Build a mock provider from fixture files.

        Importance: Lets the CLI and API demo sync without provider credentials.
        Alternatives: Hardcode sample data in the class.
        """

        events_path = fixture_dir / "mock_calendar_events.json"
        emails_path = fixture_dir / "mock_emails.json"
        events = json.loads(events_path.read_text(encoding="utf-8")) if events_path.exists() else []
        emails = json.loads(emails_path.read_text(encoding="utf-8")) if emails_path.exists() else []
        return cls(provider, events=events, emails=emails)

    def exchange_code(self, code: str) -> TokenGrant:
        if not code:
            raise AuthenticationFailed("Authorization code is empty")
        with self._lock:
            self.exchange_calls += 1
            number = next(self._counter)
        return TokenGrant(
            access_token=f"mock-access-{number}",
            refresh_token=f"mock-refresh-{number}",
            expires_in_seconds=3600,
            granted_scopes=list(self.scopes),
            external_email=f"advisor@{self.provider.value}.example",
        )

    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        with self._lock:
            self.refresh_calls += 1
            number = next(self._counter)
        return TokenGrant(
            access_token=f"mock-access-{number}",
            refresh_token=refresh_token,
            expires_in_seconds=3600,
            granted_scopes=list(self.scopes),
        )

    def fetch_changed_calendar_events(
        self, connection: Connection, since: datetime | None
    ) -> list[RemoteEvent]:
        with self._lock:
            items = list(self.events)
        return [
            RemoteEvent(
                external_id=str(item.get("id", "")),
                payload=item,
                modified_at=parse_timestamp(item.get("modified_at")),
                deleted=bool(item.get("deleted", False)),
            )
            for item in items
            if _changed_since(item, since)
        ]

    def fetch_changed_emails(self, connection: Connection, since: datetime | None) -> list[RemoteEmail]:
        folders = set(connection.settings.email_folder_ids)
        with self._lock:
            items = list(self.emails)
        return [
            RemoteEmail(
                external_id=str(item.get("id", "")),
                payload=item,
                modified_at=parse_timestamp(item.get("modified_at")),
                deleted=bool(item.get("deleted", False)),
            )
            for item in items
            if _changed_since(item, since) and (not folders or item.get("folder") in folders)
        ]

    def push_event(self, connection: Connection, draft: EventDraft) -> str:
        payload = {
            "subject": draft.subject,
            "body": draft.body,
            "location": draft.location,
            "start": draft.start_time.isoformat(),
            "end": draft.end_time.isoformat(),
            "is_all_day": draft.is_all_day,
            "attendees": [
                {"email": item.email, "name": item.name, "response": item.response}
                for item in draft.attendees
            ],
            "modified_at": utcnow().isoformat(),
        }
        with self._lock:
            if draft.external_id:
                for item in self.events:
                    if item.get("id") == draft.external_id:
                        item.update(payload)
                        return draft.external_id
                raise NotFound(f"Remote event {draft.external_id} not found")
            external_id = f"{self.provider.value}-event-{next(self._counter)}"
            if draft.create_online_meeting:
                payload["online_meeting_url"] = f"https://meet.example/{external_id}"
            self.events.append({"id": external_id, **payload})
        return external_id

    def push_email(self, connection: Connection, draft: EmailDraft) -> str:
        if not draft.to:
            raise InvalidRequest("At least one recipient is required")
        with self._lock:
            external_id = f"{self.provider.value}-sent-{next(self._counter)}"
            now = utcnow().isoformat()
            self.emails.append(
                {
                    "id": external_id,
                    "conversation_id": external_id,
                    "subject": draft.subject,
                    "body": draft.body,
                    "from": {"email": connection.external_email or "advisor@example.com"},
                    "to": [{"email": item.email, "name": item.name} for item in draft.to],
                    "cc": [{"email": item.email, "name": item.name} for item in draft.cc],
                    "received_at": now,
                    "sent_at": now,
                    "is_read": True,
                    "folder": "Sent Items",
                    "modified_at": now,
                }
            )
        return external_id

    def remove_event(self, connection: Connection, external_id: str) -> None:
        with self._lock:
            for item in self.events:
                if item.get("id") == external_id:
                    item["deleted"] = True
                    item["modified_at"] = utcnow().isoformat()
                    return
        logger.info("Remote event %s already absent.", external_id)


def provider_request(
    url: str,
    access_token: str,
    method: str = "GET",
    body: dict[str, Any] | None = None,
    phase: str = "fetch",
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Summary: Send an authenticated JSON request to a provider API.

    Importance: Maps HTTP failures onto the sync error taxonomy for both live clients.
    Alternatives: Use requests with a retry adapter.
    """

    data = json.dumps(body).encode("utf-8") if body is not None else None
    request_headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
    request_headers.update(headers or {})
    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        message = f"{method} {url} failed with {exc.code}: {error_body or exc.reason}"
        if exc.code in (401, 403):
            raise ProviderAuthRevoked(message) from exc
        if phase == "push":
            if exc.code == 429 or exc.code >= 500:
                raise ProviderTransientError(message) from exc
            if exc.code == 404:
                raise NotFound(message) from exc
            raise InvalidRequest(message) from exc
        raise ProviderCatastrophicError(message) from exc
    except urllib.error.URLError as exc:
        message = f"{method} {url} unreachable: {exc.reason}"
        if phase == "push":
            raise ProviderTransientError(message) from exc
        raise ProviderCatastrophicError(message) from exc
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ProviderCatastrophicError(f"{method} {url} returned invalid JSON") from exc


def _address(item: dict[str, Any]) -> EmailAddress:
    return EmailAddress(email=item["email"], name=item.get("name"))


def _changed_since(item: dict[str, Any], since: datetime | None) -> bool:
    if since is None:
        return True
    modified = parse_timestamp(item.get("modified_at"))
    return modified is None or modified >= since
