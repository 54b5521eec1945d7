"""Summary: Domain model dataclasses for AdvisorSync.

Importance: Defines the connection, mirror, and audit entities shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from advisorsync.errors import UnsupportedProvider


# Graph returns seven fractional digits; fromisoformat accepts at most six.
EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


class Provider(str, Enum):
    """Summary: Supported mailbox and calendar backends.

    Importance: Keys connections and registry lookups.
    Alternatives: Use free-form provider strings.
    """

    MICROSOFT = "microsoft"
    GOOGLE = "google"

    @staticmethod
    def parse(value: "str | Provider") -> "Provider":
        """Summary: Resolve a provider from user input.

        Importance: Turns unknown names into a classified error instead of a ValueError.
        Alternatives: Let Enum lookups fail with ValueError.
        """

        if isinstance(value, Provider):
            return value
        try:
            return Provider(str(value).strip().lower())
        except ValueError as exc:
            raise UnsupportedProvider(f"Provider {value} not supported") from exc


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Summary: Direction in which changes flow between CRM and provider.

    Importance: Decides whether local actions are pushed to the provider.
    Alternatives: Use two independent inbound/outbound flags.
    """

    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"

    @property
    def includes_outbound(self) -> bool:
        return self in (SyncDirection.OUTBOUND, SyncDirection.BIDIRECTIONAL)

    @property
    def includes_inbound(self) -> bool:
        return self in (SyncDirection.INBOUND, SyncDirection.BIDIRECTIONAL)


class SyncScope(str, Enum):
    CALENDAR = "calendar"
    EMAIL = "email"
    CONTACTS = "contacts"
    FULL = "full"


class SyncStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class EventState(str, Enum):
    """Summary: Lifecycle state of a calendar mirror.

    Importance: Deleted events stay in storage for the audit trail.
    Alternatives: Hard-delete rows or rely on a deleted_at timestamp.
    """

    ACTIVE = "active"
    DELETED = "deleted"


@dataclass
class ConnectionSettings:
    """Summary: Per-connection sync configuration.

    Importance: Controls which item kinds sync and how outbound actions behave.
    Alternatives: Store settings as an untyped JSON map.
    """

    sync_calendar: bool = True
    sync_email: bool = True
    sync_contacts: bool = False
    default_calendar_id: str | None = None
    email_folder_ids: list[str] = field(default_factory=list)
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    auto_archive_emails: bool = False
    archive_client_emails_only: bool = True
    auto_link_entities: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sync_calendar": self.sync_calendar,
            "sync_email": self.sync_email,
            "sync_contacts": self.sync_contacts,
            "default_calendar_id": self.default_calendar_id,
            "email_folder_ids": list(self.email_folder_ids),
            "sync_direction": self.sync_direction.value,
            "auto_archive_emails": self.auto_archive_emails,
            "archive_client_emails_only": self.archive_client_emails_only,
            "auto_link_entities": self.auto_link_entities,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ConnectionSettings":
        """Summary: Build settings from a stored map, filling defaults.

        Importance: Older rows missing newer keys still load.
        Alternatives: Migrate every stored settings blob on schema change.
        """

        defaults = ConnectionSettings()
        return ConnectionSettings(
            sync_calendar=bool(data.get("sync_calendar", defaults.sync_calendar)),
            sync_email=bool(data.get("sync_email", defaults.sync_email)),
            sync_contacts=bool(data.get("sync_contacts", defaults.sync_contacts)),
            default_calendar_id=data.get("default_calendar_id"),
            email_folder_ids=list(data.get("email_folder_ids") or []),
            sync_direction=SyncDirection(data.get("sync_direction", defaults.sync_direction.value)),
            auto_archive_emails=bool(data.get("auto_archive_emails", defaults.auto_archive_emails)),
            archive_client_emails_only=bool(
                data.get("archive_client_emails_only", defaults.archive_client_emails_only)
            ),
            auto_link_entities=bool(data.get("auto_link_entities", defaults.auto_link_entities)),
        )


SETTINGS_KEYS = frozenset(ConnectionSettings().to_dict())


@dataclass(frozen=True)
class Attendee:
    email: str
    name: str | None = None
    response: str = "none"
    is_organizer: bool = False


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: str | None = None


@dataclass(frozen=True)
class Attachment:
    id: str
    name: str
    content_type: str
    size: int


@dataclass(frozen=True)
class SyncErrorDetail:
    """Summary: One per-item failure recorded in a sync log.

    Importance: Lets users see which remote item failed and why.
    Alternatives: Keep only an error count.
    """

    message: str
    item_id: str | None = None


@dataclass
class Connection:
    """Summary: OAuth-authorized link between a user and a provider.

    Importance: Gates every sync and outbound action on its status.
    Alternatives: Store tokens on the user record.
    """

    id: str
    user_id: str
    provider: Provider
    status: ConnectionStatus
    access_token: str | None
    refresh_token: str | None
    token_expires_at: datetime | None
    scopes: list[str]
    settings: ConnectionSettings
    external_email: str | None
    last_sync_at: datetime | None
    last_sync_error: str | None
    created_at: datetime
    updated_at: datetime
    calendar_synced_at: datetime | None = None
    email_synced_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def synced_at(self, scope: SyncScope) -> datetime | None:
        """Return the fetch cursor of one item scope."""

        if scope == SyncScope.CALENDAR:
            return self.calendar_synced_at
        if scope == SyncScope.EMAIL:
            return self.email_synced_at
        return None


@dataclass
class SyncedCalendarEvent:
    """Summary: Local mirror of one remote calendar event.

    Importance: Lets the CRM show and link meetings without calling the provider.
    Alternatives: Query the provider on every page load.
    """

    id: str
    user_id: str
    provider: Provider
    external_id: str
    subject: str
    body: str | None
    location: str | None
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    online_meeting_url: str | None
    attendees: list[Attendee]
    sync_direction: SyncDirection
    state: EventState
    remote_modified_at: datetime | None
    content_hash: str | None
    last_synced_at: datetime
    raw_data: dict[str, Any]
    linked_household_id: str | None = None
    linked_person_id: str | None = None


@dataclass
class SyncedEmail:
    """Summary: Local mirror of one remote email message.

    Importance: Backs client communication history and linking.
    Alternatives: Store only message ids and fetch content lazily.
    """

    id: str
    user_id: str
    provider: Provider
    external_id: str
    conversation_id: str | None
    subject: str
    body: str | None
    body_preview: str | None
    body_content_type: str
    sender: EmailAddress
    to: list[EmailAddress]
    cc: list[EmailAddress]
    received_at: datetime
    sent_at: datetime | None
    is_read: bool
    has_attachments: bool
    attachments: list[Attachment]
    importance: str
    folder_name: str | None
    categories: list[str]
    sync_direction: SyncDirection
    remote_modified_at: datetime | None
    content_hash: str | None
    last_synced_at: datetime
    raw_data: dict[str, Any]
    linked_household_id: str | None = None
    linked_person_id: str | None = None
    internal_notes: str | None = None
    is_archived: bool = False
    is_client_communication: bool = False

    def addresses(self) -> list[str]:
        """Summary: Sender, then to, then cc addresses in order.

        Importance: Defines the match order used by auto-linking.
        Alternatives: Match on the sender only.
        """

        return [self.sender.email] + [item.email for item in self.to] + [item.email for item in self.cc]


@dataclass(frozen=True)
class EmailThread:
    """Summary: Derived aggregate over emails sharing a conversation id.

    Importance: Powers conversation views without scanning all emails.
    Alternatives: Group emails on every request.
    """

    id: str
    user_id: str
    provider: Provider
    conversation_id: str
    subject: str
    participants: list[EmailAddress]
    message_count: int
    last_message_at: datetime
    has_unread: bool
    linked_household_id: str | None
    linked_person_id: str | None


@dataclass
class SyncLog:
    """Summary: Append-only record of one sync attempt.

    Importance: Audits every run with its counters and per-item errors.
    Alternatives: Log sync outcomes to files only.
    """

    id: str
    user_id: str
    provider: Provider
    sync_type: SyncScope
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    errors: int = 0
    error_details: list[SyncErrorDetail] = field(default_factory=list)

    def record_error(self, message: str, item_id: str | None = None) -> None:
        self.error_details.append(SyncErrorDetail(message=message, item_id=item_id))
        self.errors += 1


@dataclass(frozen=True)
class TokenGrant:
    """Summary: Tokens returned by a provider code exchange or refresh.

    Importance: Normalizes provider responses before they reach the credential store.
    Alternatives: Pass raw provider JSON around.
    """

    access_token: str
    refresh_token: str | None
    expires_in_seconds: int | None
    granted_scopes: list[str]
    external_email: str | None = None


@dataclass(frozen=True)
class RemoteEvent:
    """Summary: Envelope for one changed calendar item from a provider.

    Importance: Keeps parsing per item so one malformed payload fails alone.
    Alternatives: Parse the whole page eagerly in the client.
    """

    external_id: str
    payload: dict[str, Any]
    modified_at: datetime | None = None
    deleted: bool = False


@dataclass(frozen=True)
class RemoteEmail:
    external_id: str
    payload: dict[str, Any]
    modified_at: datetime | None = None
    deleted: bool = False


@dataclass(frozen=True)
class EventFields:
    """Summary: Mirrored content fields of a calendar event.

    Importance: Provider clients produce these from raw payloads.
    Alternatives: Map payloads straight onto storage columns.
    """

    subject: str
    start_time: datetime
    end_time: datetime
    body: str | None = None
    location: str | None = None
    is_all_day: bool = False
    online_meeting_url: str | None = None
    attendees: list[Attendee] = field(default_factory=list)


@dataclass(frozen=True)
class EmailFields:
    subject: str
    sender: EmailAddress
    received_at: datetime
    conversation_id: str | None = None
    body: str | None = None
    body_preview: str | None = None
    body_content_type: str = "html"
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    sent_at: datetime | None = None
    is_read: bool = False
    has_attachments: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    importance: str = "normal"
    folder_name: str | None = None
    categories: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EventDraft:
    """Summary: Local create or update request for a calendar event.

    Importance: Carries outbound changes to the provider and the local mirror.
    Alternatives: Reuse the mirror dataclass for drafts.
    """

    subject: str
    start_time: datetime
    end_time: datetime
    body: str | None = None
    location: str | None = None
    is_all_day: bool = False
    attendees: list[Attendee] = field(default_factory=list)
    create_online_meeting: bool = False
    calendar_id: str | None = None
    external_id: str | None = None
    linked_household_id: str | None = None
    linked_person_id: str | None = None


@dataclass(frozen=True)
class EventUpdate:
    """Summary: Partial change to an existing calendar mirror.

    Importance: None means "leave as is", so callers send only what changed.
    Alternatives: Require the full event on every update.
    """

    subject: str | None = None
    body: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None
    attendees: list[Attendee] | None = None


@dataclass(frozen=True)
class EmailDraft:
    subject: str
    body: str
    to: list[EmailAddress]
    cc: list[EmailAddress] = field(default_factory=list)
    body_content_type: str = "html"
    importance: str = "normal"
    linked_household_id: str | None = None
    linked_person_id: str | None = None


@dataclass(frozen=True)
class CalendarFilter:
    start_date: datetime | None = None
    end_date: datetime | None = None
    linked_household_id: str | None = None
    linked_person_id: str | None = None
    include_deleted: bool = False


@dataclass(frozen=True)
class EmailFilter:
    """Summary: Optional criteria for listing email mirrors.

    Importance: Mirrors the CRM inbox filters.
    Alternatives: Return everything and filter in the UI.
    """

    start_date: datetime | None = None
    end_date: datetime | None = None
    folder: str | None = None
    is_read: bool | None = None
    has_attachments: bool | None = None
    search: str | None = None
    linked_household_id: str | None = None
    linked_person_id: str | None = None
    is_client_communication: bool | None = None
    is_archived: bool | None = None
    limit: int = 100


@dataclass(frozen=True)
class PersonRecord:
    """Summary: CRM person known by email address.

    Importance: Feeds auto-linking of unlinked mirrors.
    Alternatives: Query the CRM persons table directly.
    """

    person_id: str
    email: str
    household_id: str | None = None
    name: str | None = None


def utcnow() -> datetime:
    """Summary: Current time as an aware UTC datetime.

    Importance: Keeps stored timestamps comparable across providers.
    Alternatives: Store naive local times.
    """

    return datetime.now(timezone.utc)


def parse_timestamp(value: "str | datetime | None") -> datetime | None:
    """Summary: Parse an ISO-8601 value into an aware UTC datetime.

    Importance: Providers mix trailing Z, offsets, and naive values.
    Alternatives: Use dateutil for parsing.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(EXCESS_FRACTION.sub(r"\1", text))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
