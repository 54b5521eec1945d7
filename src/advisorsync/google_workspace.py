"""Summary: Google Calendar and Gmail provider client.

Importance: Connects Google Workspace accounts to reconciliation through the ProviderClient seam.
Alternatives: Use google-api-python-client.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import getaddresses
from typing import Any
import urllib.parse

from advisorsync import oauth
from advisorsync.config import AppConfig
from advisorsync.errors import AuthenticationFailed
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
)
from advisorsync.providers import ProviderClient, provider_request


logger = logging.getLogger(__name__)

MAX_PAGES = 10
PAGE_SIZE = 100


class GoogleWorkspaceClient(ProviderClient):
    """Summary: Reads and writes Google Calendar v3 and Gmail v1 data.

    Importance: Production implementation for the GOOGLE provider.
    Alternatives: Sync Gmail over IMAP with XOAUTH2.
    """

    provider = Provider.GOOGLE

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._calendar_url = config.google_calendar_base_url.rstrip("/")
        self._gmail_url = config.google_gmail_base_url.rstrip("/")

    def exchange_code(self, code: str) -> TokenGrant:
        if not code:
            raise AuthenticationFailed("Authorization code is empty")
        return oauth.exchange_code(self._config, self.provider, code)

    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        return oauth.refresh_grant(self._config, self.provider, refresh_token)

    def fetch_changed_calendar_events(
        self, connection: Connection, since: datetime | None
    ) -> list[RemoteEvent]:
        """Summary: Page through calendar events updated since a timestamp.

        Importance: showDeleted surfaces cancellations so mirrors can be soft-deleted.
        Alternatives: Use sync tokens from a full listing.
        """

        calendar_id = urllib.parse.quote(connection.settings.default_calendar_id or "primary", safe="")
        params: dict[str, str] = {
            "maxResults": str(PAGE_SIZE),
            "showDeleted": "true",
            "singleEvents": "true",
        }
        if since is not None:
            params["updatedMin"] = since.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        for _ in range(MAX_PAGES):
            if page_token:
                params["pageToken"] = page_token
            url = f"{self._calendar_url}/calendars/{calendar_id}/events?{urllib.parse.urlencode(params)}"
            response = provider_request(url, _token(connection))
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return [
            RemoteEvent(
                external_id=str(item.get("id", "")),
                payload=item,
                modified_at=parse_timestamp(item.get("updated")),
                deleted=item.get("status") == "cancelled",
            )
            for item in items
        ]

    def fetch_changed_emails(self, connection: Connection, since: datetime | None) -> list[RemoteEmail]:
        """Summary: List message ids then fetch each message in full.

        Importance: Gmail has no modification timestamp, so reconciliation compares payload fingerprints.
        Alternatives: Use the history API with a stored historyId.
        """

        params: dict[str, str] = {"maxResults": str(PAGE_SIZE)}
        if since is not None:
            params["q"] = f"after:{int(since.timestamp())}"
        for label in connection.settings.email_folder_ids:
            params.setdefault("labelIds", label)
        url = f"{self._gmail_url}/users/me/messages?{urllib.parse.urlencode(params)}"
        listing = provider_request(url, _token(connection))
        remote: list[RemoteEmail] = []
        for item in listing.get("messages", []):
            message_id = item.get("id")
            if not message_id:
                continue
            detail = provider_request(
                f"{self._gmail_url}/users/me/messages/{message_id}?format=full", _token(connection)
            )
            remote.append(RemoteEmail(external_id=str(message_id), payload=detail))
        return remote

    def push_event(self, connection: Connection, draft: EventDraft) -> str:
        calendar_id = urllib.parse.quote(
            draft.calendar_id or connection.settings.default_calendar_id or "primary", safe=""
        )
        body = _event_body(draft)
        if draft.external_id:
            url = f"{self._calendar_url}/calendars/{calendar_id}/events/{draft.external_id}"
            response = provider_request(url, _token(connection), "PATCH", body, phase="push")
            return str(response.get("id") or draft.external_id)
        url = f"{self._calendar_url}/calendars/{calendar_id}/events"
        if draft.create_online_meeting:
            url += "?conferenceDataVersion=1"
        response = provider_request(url, _token(connection), "POST", body, phase="push")
        return str(response["id"])

    def push_email(self, connection: Connection, draft: EmailDraft) -> str:
        message = EmailMessage()
        message["Subject"] = draft.subject
        message["To"] = ", ".join(_format_address(item) for item in draft.to)
        if draft.cc:
            message["Cc"] = ", ".join(_format_address(item) for item in draft.cc)
        if connection.external_email:
            message["From"] = connection.external_email
        subtype = "html" if draft.body_content_type == "html" else "plain"
        message.set_content(draft.body, subtype=subtype)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("utf-8")
        response = provider_request(
            f"{self._gmail_url}/users/me/messages/send", _token(connection), "POST", {"raw": raw}, phase="push"
        )
        return str(response["id"])

    def remove_event(self, connection: Connection, external_id: str) -> None:
        calendar_id = urllib.parse.quote(connection.settings.default_calendar_id or "primary", safe="")
        provider_request(
            f"{self._calendar_url}/calendars/{calendar_id}/events/{external_id}",
            _token(connection),
            "DELETE",
            None,
            phase="push",
        )

    def parse_event(self, remote: RemoteEvent) -> EventFields:
        return _parse_google_event(remote.payload)

    def parse_email(self, remote: RemoteEmail) -> EmailFields:
        return _parse_gmail_message(remote.payload)


def _parse_google_event(item: dict[str, Any]) -> EventFields:
    start = item["start"]
    end = item["end"]
    is_all_day = "date" in start and "dateTime" not in start
    start_time = parse_timestamp(start.get("dateTime") or start["date"])
    end_time = parse_timestamp(end.get("dateTime") or end["date"])
    if start_time is None or end_time is None:
        raise ValueError("event start and end are required")
    return EventFields(
        subject=item.get("summary") or "(No Subject)",
        start_time=start_time,
        end_time=end_time,
        body=item.get("description"),
        location=item.get("location"),
        is_all_day=is_all_day,
        online_meeting_url=item.get("hangoutLink"),
        attendees=[
            Attendee(
                email=entry["email"],
                name=entry.get("displayName"),
                response=_google_response(entry.get("responseStatus")),
                is_organizer=bool(entry.get("organizer", False)),
            )
            for entry in item.get("attendees", [])
        ],
    )


def _parse_gmail_message(message: dict[str, Any]) -> EmailFields:
    """Summary: Parse a Gmail message resource into mirrored fields.

    Importance: Normalizes Gmail headers, labels, and multipart bodies.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message["payload"]
    headers = _parse_gmail_headers(payload.get("headers", []))
    senders = _addresses(headers.get("From", ""))
    if not senders:
        raise ValueError("message has no From header")
    received_at = datetime.fromtimestamp(int(message["internalDate"]) / 1000, tz=timezone.utc)
    labels = set(message.get("labelIds", []))
    body = _extract_gmail_body(payload)
    attachments = [
        Attachment(
            id=part["body"]["attachmentId"],
            name=part.get("filename", ""),
            content_type=part.get("mimeType", "application/octet-stream"),
            size=int(part["body"].get("size", 0)),
        )
        for part in _walk_gmail_parts(payload)
        if part.get("filename") and (part.get("body") or {}).get("attachmentId")
    ]
    return EmailFields(
        subject=headers.get("Subject") or "(No Subject)",
        sender=senders[0],
        received_at=received_at,
        conversation_id=message.get("threadId"),
        body=body,
        body_preview=message.get("snippet") or body[:200],
        body_content_type="text",
        to=_addresses(headers.get("To", "")),
        cc=_addresses(headers.get("Cc", "")),
        sent_at=received_at if "SENT" in labels else None,
        is_read="UNREAD" not in labels,
        has_attachments=bool(attachments),
        attachments=attachments,
        importance="high" if "IMPORTANT" in labels else "normal",
        folder_name="Sent Items" if "SENT" in labels else "Inbox" if "INBOX" in labels else None,
        categories=sorted(label for label in labels if label.startswith("Label_")),
    )


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            normalized[name] = value
    return normalized


def _extract_gmail_body(payload: dict[str, Any]) -> str:
    """Summary: Extract a plain text body from a Gmail payload.

    Importance: Provides readable content for the CRM timeline.
    Alternatives: Store the snippet only for Gmail messages.
    """

    text_parts: list[str] = []
    fallback_parts: list[str] = []
    for part in _walk_gmail_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data or part.get("filename"):
            continue
        decoded = _decode_base64url(data)
        if part.get("mimeType") == "text/plain":
            text_parts.append(decoded)
        else:
            fallback_parts.append(decoded)
    chosen = text_parts or fallback_parts
    return "\n".join(item.strip() for item in chosen if item.strip()).strip()


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="ignore")


def _addresses(header_value: str) -> list[EmailAddress]:
    return [
        EmailAddress(email=address, name=name or None)
        for name, address in getaddresses([header_value])
        if address
    ]


def _format_address(address: EmailAddress) -> str:
    return f"{address.name} <{address.email}>" if address.name else address.email


def _google_response(status: str | None) -> str:
    return {
        "accepted": "accepted",
        "declined": "declined",
        "tentative": "tentative",
    }.get(status or "", "none")


def _event_body(draft: EventDraft) -> dict[str, Any]:
    if draft.is_all_day:
        start: dict[str, str] = {"date": draft.start_time.date().isoformat()}
        end: dict[str, str] = {"date": draft.end_time.date().isoformat()}
    else:
        start = {"dateTime": draft.start_time.isoformat(), "timeZone": "UTC"}
        end = {"dateTime": draft.end_time.isoformat(), "timeZone": "UTC"}
    body: dict[str, Any] = {
        "summary": draft.subject,
        "description": draft.body or "",
        "start": start,
        "end": end,
        "attendees": [
            {"email": item.email, "displayName": item.name} if item.name else {"email": item.email}
            for item in draft.attendees
        ],
    }
    if draft.location:
        body["location"] = draft.location
    if draft.create_online_meeting:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": f"advisorsync-{int(draft.start_time.timestamp())}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def _token(connection: Connection) -> str:
    if not connection.access_token:
        raise AuthenticationFailed("Connection has no access token")
    return connection.access_token
