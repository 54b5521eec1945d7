"""Summary: Microsoft Graph provider client.

Importance: Connects Outlook mail and calendar to reconciliation through the ProviderClient seam.
Alternatives: Use the msgraph SDK.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
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

MAX_PAGES = 20
PAGE_SIZE = 50
# Immutable ids keep a sent draft's id stable after it moves to Sent Items.
GRAPH_PREFERENCES = {"Prefer": 'IdType="ImmutableId", outlook.timezone="UTC"'}
MESSAGE_FIELDS = (
    "id,conversationId,subject,body,bodyPreview,from,toRecipients,ccRecipients,"
    "receivedDateTime,sentDateTime,isRead,hasAttachments,importance,parentFolderId,"
    "categories,lastModifiedDateTime"
)


class MicrosoftGraphClient(ProviderClient):
    """Summary: Reads and writes Outlook data via Microsoft Graph v1.0.

    Importance: Production implementation for the MICROSOFT provider.
    Alternatives: Sync over EWS or IMAP.
    """

    provider = Provider.MICROSOFT

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._base_url = config.microsoft_graph_base_url.rstrip("/")

    def exchange_code(self, code: str) -> TokenGrant:
        if not code:
            raise AuthenticationFailed("Authorization code is empty")
        return oauth.exchange_code(self._config, self.provider, code)

    def refresh_tokens(self, refresh_token: str) -> TokenGrant:
        return oauth.refresh_grant(self._config, self.provider, refresh_token)

    def fetch_changed_calendar_events(
        self, connection: Connection, since: datetime | None
    ) -> list[RemoteEvent]:
        """Summary: Page through events modified since a timestamp.

        Importance: Limits each run to changed items instead of the whole calendar.
        Alternatives: Use delta queries with stored delta tokens.
        """

        calendar_id = connection.settings.default_calendar_id
        path = f"/me/calendars/{calendar_id}/events" if calendar_id else "/me/events"
        items = self._collect(connection, path, since, select=None)
        return [
            RemoteEvent(
                external_id=str(item.get("id", "")),
                payload=item,
                modified_at=parse_timestamp(item.get("lastModifiedDateTime")),
                deleted="@removed" in item or bool(item.get("isCancelled", False)),
            )
            for item in items
        ]

    def fetch_changed_emails(self, connection: Connection, since: datetime | None) -> list[RemoteEmail]:
        folder_ids = connection.settings.email_folder_ids
        paths = [f"/me/mailFolders/{folder}/messages" for folder in folder_ids] or ["/me/messages"]
        items: list[dict[str, Any]] = []
        for path in paths:
            items.extend(self._collect(connection, path, since, select=MESSAGE_FIELDS))
        return [
            RemoteEmail(
                external_id=str(item.get("id", "")),
                payload=item,
                modified_at=parse_timestamp(item.get("lastModifiedDateTime")),
                deleted="@removed" in item,
            )
            for item in items
        ]

    def push_event(self, connection: Connection, draft: EventDraft) -> str:
        body = _event_body(draft)
        if draft.external_id:
            url = f"{self._base_url}/me/events/{draft.external_id}"
            response = self._push(connection, url, "PATCH", body)
            return str(response.get("id") or draft.external_id)
        calendar_id = draft.calendar_id or connection.settings.default_calendar_id
        path = f"/me/calendars/{calendar_id}/events" if calendar_id else "/me/events"
        response = self._push(connection, f"{self._base_url}{path}", "POST", body)
        return str(response["id"])

    def push_email(self, connection: Connection, draft: EmailDraft) -> str:
        """Summary: Create a draft message and send it.

        Importance: sendMail returns no id, so the draft's immutable id becomes the external id.
        Alternatives: Send via sendMail and match the sent item on the next sync.
        """

        message = {
            "subject": draft.subject,
            "body": {"contentType": draft.body_content_type, "content": draft.body},
            "toRecipients": [_recipient(item) for item in draft.to],
            "ccRecipients": [_recipient(item) for item in draft.cc],
            "importance": draft.importance,
        }
        created = self._push(connection, f"{self._base_url}/me/messages", "POST", message)
        message_id = str(created["id"])
        self._push(connection, f"{self._base_url}/me/messages/{message_id}/send", "POST", None)
        return message_id

    def remove_event(self, connection: Connection, external_id: str) -> None:
        self._push(connection, f"{self._base_url}/me/events/{external_id}", "DELETE", None)

    def _push(
        self, connection: Connection, url: str, method: str, body: dict[str, Any] | None
    ) -> dict[str, Any]:
        return provider_request(url, _token(connection), method, body, phase="push", headers=GRAPH_PREFERENCES)

    def parse_event(self, remote: RemoteEvent) -> EventFields:
        return _parse_graph_event(remote.payload)

    def parse_email(self, remote: RemoteEmail) -> EmailFields:
        return _parse_graph_message(remote.payload)

    def _collect(
        self, connection: Connection, path: str, since: datetime | None, select: str | None
    ) -> list[dict[str, Any]]:
        params: dict[str, str] = {"$top": str(PAGE_SIZE)}
        if since is not None:
            params["$filter"] = f"lastModifiedDateTime ge {_graph_time(since)}"
        if select:
            params["$select"] = select
        url: str | None = f"{self._base_url}{path}?{urllib.parse.urlencode(params)}"
        items: list[dict[str, Any]] = []
        pages = 0
        while url and pages < MAX_PAGES:
            response = provider_request(url, _token(connection), headers=GRAPH_PREFERENCES)
            items.extend(response.get("value", []))
            url = response.get("@odata.nextLink")
            pages += 1
        if url:
            logger.warning("Stopped paging %s after %s pages.", path, MAX_PAGES)
        return items


def _parse_graph_event(item: dict[str, Any]) -> EventFields:
    """Summary: Parse a Graph event resource.

    Importance: Normalizes Graph's nested start/end and attendee shapes.
    Alternatives: Store the raw Graph payload only.
    """

    start_time = _graph_datetime(item["start"])
    end_time = _graph_datetime(item["end"])
    organizer = ((item.get("organizer") or {}).get("emailAddress") or {}).get("address")
    attendees = [
        Attendee(
            email=entry["emailAddress"]["address"],
            name=entry["emailAddress"].get("name"),
            response=((entry.get("status") or {}).get("response") or "none").lower(),
            is_organizer=entry["emailAddress"]["address"] == organizer,
        )
        for entry in item.get("attendees", [])
    ]
    body = item.get("body") or {}
    return EventFields(
        subject=item.get("subject") or "(No Subject)",
        start_time=start_time,
        end_time=end_time,
        body=body.get("content"),
        location=(item.get("location") or {}).get("displayName"),
        is_all_day=bool(item.get("isAllDay", False)),
        online_meeting_url=(item.get("onlineMeeting") or {}).get("joinUrl"),
        attendees=attendees,
    )


def _parse_graph_message(item: dict[str, Any]) -> EmailFields:
    received_at = parse_timestamp(item["receivedDateTime"])
    if received_at is None:
        raise ValueError("receivedDateTime is empty")
    body = item.get("body") or {}
    return EmailFields(
        subject=item.get("subject") or "(No Subject)",
        sender=_graph_address(item["from"]),
        received_at=received_at,
        conversation_id=item.get("conversationId"),
        body=body.get("content"),
        body_preview=item.get("bodyPreview"),
        body_content_type=(body.get("contentType") or "html").lower(),
        to=[_graph_address(entry) for entry in item.get("toRecipients", [])],
        cc=[_graph_address(entry) for entry in item.get("ccRecipients", [])],
        sent_at=parse_timestamp(item.get("sentDateTime")),
        is_read=bool(item.get("isRead", False)),
        has_attachments=bool(item.get("hasAttachments", False)),
        attachments=[
            Attachment(
                id=entry["id"],
                name=entry.get("name", ""),
                content_type=entry.get("contentType", "application/octet-stream"),
                size=int(entry.get("size", 0)),
            )
            for entry in item.get("attachments", [])
        ],
        importance=(item.get("importance") or "normal").lower(),
        folder_name=item.get("parentFolderId"),
        categories=list(item.get("categories", [])),
    )


def _graph_address(entry: dict[str, Any]) -> EmailAddress:
    address = entry["emailAddress"]
    return EmailAddress(email=address["address"], name=address.get("name"))


def _graph_datetime(value: dict[str, Any]) -> datetime:
    # Requests carry Prefer: outlook.timezone="UTC", so naive values are UTC.
    parsed = parse_timestamp(value["dateTime"])
    if parsed is None:
        raise ValueError("event dateTime is empty")
    return parsed


def _graph_time(value: datetime) -> str:
    return _graph_local(value) + "Z"


def _recipient(address: EmailAddress) -> dict[str, Any]:
    entry: dict[str, Any] = {"address": address.email}
    if address.name:
        entry["name"] = address.name
    return {"emailAddress": entry}


def _event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": draft.subject,
        "body": {"contentType": "html", "content": draft.body or ""},
        "start": {"dateTime": _graph_local(draft.start_time), "timeZone": "UTC"},
        "end": {"dateTime": _graph_local(draft.end_time), "timeZone": "UTC"},
        "isAllDay": draft.is_all_day,
        "attendees": [
            {"emailAddress": {"address": item.email, "name": item.name}, "type": "required"}
            for item in draft.attendees
        ],
    }
    if draft.location:
        body["location"] = {"displayName": draft.location}
    if draft.create_online_meeting:
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    return body


def _token(connection: Connection) -> str:
    if not connection.access_token:
        raise AuthenticationFailed("Connection has no access token")
    return connection.access_token


def _graph_local(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S")
