"""Summary: Core application services for AdvisorSync.

Importance: Orchestrates credentials, outbound actions, linking, audit reads, and stats for one user.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from advisorsync.config import AppConfig
from advisorsync.directory import PersonDirectory, match_person
from advisorsync.errors import (
    AuthenticationFailed,
    IntegrationError,
    IntegrationNotActive,
    InvalidRequest,
    NotFound,
)
from advisorsync.models import (
    SETTINGS_KEYS,
    CalendarFilter,
    Connection,
    ConnectionSettings,
    ConnectionStatus,
    EmailAddress,
    EmailDraft,
    EmailFilter,
    EmailThread,
    EventDraft,
    EventState,
    EventUpdate,
    Provider,
    SyncDirection,
    SyncedCalendarEvent,
    SyncedEmail,
    SyncLog,
    parse_timestamp,
    utcnow,
)
from advisorsync.oauth import authorization_url
from advisorsync.providers import ProviderRegistry
from advisorsync.storage.sqlite_store import SqliteStore
from advisorsync.sync import KeyedLocks, OutboundPusher
from advisorsync.token_codec import StateCodec, TokenCodec


logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "crm-"
BOOLEAN_SETTINGS = frozenset(
    {
        "sync_calendar",
        "sync_email",
        "sync_contacts",
        "auto_archive_emails",
        "archive_client_emails_only",
        "auto_link_entities",
    }
)


@dataclass(frozen=True)
class CredentialService:
    """Summary: Owns the connection lifecycle and token storage for one user.

    Importance: The only component that reads or writes provider credentials.
    Alternatives: Use a secrets manager or encrypted database.
    """

    store: SqliteStore
    registry: ProviderRegistry
    config: AppConfig
    codec: TokenCodec
    state_codec: StateCodec
    refresh_locks: KeyedLocks
    user_id: str

    def begin_authorization(self, provider: Provider | str) -> str:
        """Summary: Build the provider consent URL carrying a signed state.

        Importance: Starts the OAuth round-trip for this user.
        Alternatives: Keep pending flows in server-side session storage.
        """

        resolved = Provider.parse(provider)
        self.registry.get(resolved)
        state = self.state_codec.encode(self.user_id, resolved)
        return authorization_url(self.config, resolved, state)

    def complete_authorization(self, code: str, state: str) -> Connection:
        """Summary: Exchange a code and upsert the connection for (user, provider).

        Importance: Reconnecting after a disconnect restores ACTIVE and keeps settings.
        Alternatives: Create a new connection row for every authorization.
        """

        user_id, provider = self.state_codec.decode(state)
        if user_id != self.user_id:
            raise AuthenticationFailed("OAuth state was issued for a different user")
        client = self.registry.get(provider)
        grant = client.exchange_code(code)
        now = utcnow()
        connection = Connection(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            status=ConnectionStatus.ACTIVE,
            access_token=self.codec.encode(grant.access_token),
            refresh_token=self.codec.encode(grant.refresh_token) if grant.refresh_token else None,
            token_expires_at=_expiry(now, grant.expires_in_seconds),
            scopes=list(grant.granted_scopes),
            settings=ConnectionSettings(),
            external_email=grant.external_email,
            last_sync_at=None,
            last_sync_error=None,
            created_at=now,
            updated_at=now,
        )
        stored = self.store.upsert_connection(connection)
        logger.info("Connected %s for user %s.", provider.value, user_id)
        return self._decode(stored)

    def get_connection(self, provider: Provider | str) -> Connection:
        resolved = Provider.parse(provider)
        connection = self.store.get_connection(self.user_id, resolved)
        if connection is None:
            raise NotFound(f"No {resolved.value} connection for this user")
        return self._decode(connection)

    def list_connections(self) -> list[Connection]:
        return [self._decode(item) for item in self.store.list_connections(self.user_id)]

    def require_active(self, provider: Provider | str) -> Connection:
        connection = self.get_connection(provider)
        if not connection.is_active:
            raise IntegrationNotActive(
                f"{connection.provider.value} connection is {connection.status.value}"
            )
        return connection

    def update_settings(self, provider: Provider | str, partial: dict[str, Any]) -> Connection:
        """Summary: Merge a partial settings map into the stored settings.

        Importance: Unspecified keys keep their prior values.
        Alternatives: Replace the whole settings object on every change.
        """

        unknown = set(partial) - SETTINGS_KEYS
        if unknown:
            raise InvalidRequest(f"Unknown settings keys: {', '.join(sorted(unknown))}")
        for key in BOOLEAN_SETTINGS & set(partial):
            if not isinstance(partial[key], bool):
                raise InvalidRequest(f"Setting {key} must be a boolean")
        folders = partial.get("email_folder_ids")
        if folders is not None and (
            not isinstance(folders, list) or not all(isinstance(item, str) for item in folders)
        ):
            raise InvalidRequest("Setting email_folder_ids must be a list of strings")
        connection = self.get_connection(provider)
        merged = connection.settings.to_dict()
        merged.update(partial)
        try:
            settings = ConnectionSettings.from_dict(merged)
        except ValueError as exc:
            raise InvalidRequest(f"Invalid settings: {exc}") from exc
        self.store.update_connection_settings(connection.id, settings, utcnow())
        logger.info("Updated %s settings: %s.", connection.provider.value, ", ".join(sorted(partial)))
        return replace(connection, settings=settings)

    def disconnect(self, provider: Provider | str) -> Connection:
        connection = self.get_connection(provider)
        self.store.update_connection_status(
            connection.id, ConnectionStatus.REVOKED, utcnow(), clear_tokens=True
        )
        logger.info("Disconnected %s for user %s.", connection.provider.value, self.user_id)
        return self.get_connection(connection.provider)

    def access_token(self, connection: Connection) -> str:
        """Summary: Return a usable access token, refreshing it when near expiry.

        Importance: At most one refresh per connection is in flight; waiters reuse its result.
        Alternatives: Always refresh tokens before use.
        """

        if not connection.is_active or not connection.access_token:
            raise IntegrationNotActive(f"{connection.provider.value} connection has no usable token")
        if not self._expires_soon(connection):
            return connection.access_token
        with self.refresh_locks.lock_for(connection.id):
            current = self.get_connection(connection.provider)
            if not current.is_active or not current.access_token:
                raise IntegrationNotActive(f"{current.provider.value} connection has no usable token")
            if not self._expires_soon(current):
                return current.access_token
            now = utcnow()
            if not current.refresh_token:
                message = "Access token expired and no refresh token is available"
                self.store.update_connection_status(current.id, ConnectionStatus.EXPIRED, now, message)
                logger.warning("%s connection expired for user %s.", current.provider.value, self.user_id)
                raise IntegrationNotActive(message)
            client = self.registry.get(current.provider)
            try:
                grant = client.refresh_tokens(current.refresh_token)
            except IntegrationError as exc:
                message = f"Token refresh failed: {exc}"
                self.store.update_connection_status(current.id, ConnectionStatus.ERROR, now, message)
                logger.warning("Token refresh failed for %s.", current.provider.value)
                raise AuthenticationFailed(message) from exc
            refresh_token = grant.refresh_token or current.refresh_token
            self.store.update_connection_tokens(
                current.id,
                self.codec.encode(grant.access_token),
                self.codec.encode(refresh_token),
                _expiry(now, grant.expires_in_seconds),
                list(grant.granted_scopes) or current.scopes,
                now,
            )
            logger.info("Refreshed %s access token.", current.provider.value)
            return grant.access_token

    def mark_error(self, connection: Connection, message: str) -> None:
        self.store.update_connection_status(connection.id, ConnectionStatus.ERROR, utcnow(), message)
        logger.warning("%s connection moved to error: %s", connection.provider.value, message)

    def _expires_soon(self, connection: Connection) -> bool:
        if connection.token_expires_at is None:
            return False
        margin = timedelta(seconds=self.config.token_refresh_margin_seconds)
        return connection.token_expires_at <= utcnow() + margin

    def _decode(self, connection: Connection) -> Connection:
        return replace(
            connection,
            access_token=self.codec.decode(connection.access_token) if connection.access_token else None,
            refresh_token=self.codec.decode(connection.refresh_token) if connection.refresh_token else None,
        )


@dataclass(frozen=True)
class CalendarService:
    """Summary: Lists calendar mirrors and runs outbound calendar actions.

    Importance: Pushes to the provider first so the mirror carries the provider id.
    Alternatives: Write locally and reconcile outbound changes later.
    """

    store: SqliteStore
    registry: ProviderRegistry
    credentials: CredentialService
    pusher: OutboundPusher
    user_id: str

    def list_events(self, criteria: CalendarFilter | None = None) -> list[SyncedCalendarEvent]:
        return self.store.list_calendar_events(self.user_id, criteria or CalendarFilter())

    def get_event(self, event_id: str) -> SyncedCalendarEvent:
        event = self.store.get_calendar_event(self.user_id, event_id)
        if event is None:
            raise NotFound(f"Calendar event {event_id} not found")
        return event

    def create_event(self, provider: Provider | str, draft: EventDraft) -> SyncedCalendarEvent:
        """Summary: Create an event remotely (when outbound) and mirror it locally.

        Importance: The push and the mirror write form one step from the caller's view.
        Alternatives: Queue the push and return immediately.
        """

        draft = replace(draft, start_time=_aware(draft.start_time), end_time=_aware(draft.end_time))
        _validate_event_times(draft.subject, draft.start_time, draft.end_time)
        connection = self.credentials.require_active(provider)
        client = self.registry.get(connection.provider)
        pushed = connection.settings.sync_direction.includes_outbound
        if pushed:
            live = replace(connection, access_token=self.credentials.access_token(connection))
            external_id = self.pusher.push(lambda: client.push_event(live, draft), f"event '{draft.subject}'")
        else:
            external_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"
        event = SyncedCalendarEvent(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            provider=connection.provider,
            external_id=external_id,
            subject=draft.subject,
            body=draft.body,
            location=draft.location,
            start_time=draft.start_time,
            end_time=draft.end_time,
            is_all_day=draft.is_all_day,
            online_meeting_url=None,
            attendees=list(draft.attendees),
            sync_direction=SyncDirection.OUTBOUND,
            state=EventState.ACTIVE,
            remote_modified_at=None,
            content_hash=None,
            last_synced_at=utcnow(),
            raw_data={"source": "crm", "pushed": pushed},
            linked_household_id=draft.linked_household_id,
            linked_person_id=draft.linked_person_id,
        )
        self.store.save_calendar_event(event)
        logger.info("Created %s event %s (pushed=%s).", connection.provider.value, external_id, pushed)
        return event

    def update_event(self, event_id: str, changes: EventUpdate) -> SyncedCalendarEvent:
        event = self._active_event(event_id)
        subject = changes.subject if changes.subject is not None else event.subject
        start_time = _aware(changes.start_time or event.start_time)
        end_time = _aware(changes.end_time or event.end_time)
        _validate_event_times(subject, start_time, end_time)
        connection = self.credentials.require_active(event.provider)
        updated = replace(
            event,
            subject=subject,
            body=changes.body if changes.body is not None else event.body,
            location=changes.location if changes.location is not None else event.location,
            start_time=start_time,
            end_time=end_time,
            is_all_day=changes.is_all_day if changes.is_all_day is not None else event.is_all_day,
            attendees=list(changes.attendees) if changes.attendees is not None else event.attendees,
            last_synced_at=utcnow(),
        )
        if self._pushes(connection, event):
            client = self.registry.get(connection.provider)
            live = replace(connection, access_token=self.credentials.access_token(connection))
            draft = EventDraft(
                subject=updated.subject,
                start_time=updated.start_time,
                end_time=updated.end_time,
                body=updated.body,
                location=updated.location,
                is_all_day=updated.is_all_day,
                attendees=updated.attendees,
                external_id=event.external_id,
            )
            external_id = self.pusher.push(lambda: client.push_event(live, draft), f"event {event.external_id}")
            updated = replace(updated, external_id=external_id, remote_modified_at=None, content_hash=None)
        self.store.save_calendar_event(updated)
        return updated

    def delete_event(self, event_id: str) -> None:
        """Summary: Soft-delete an event, removing it remotely when outbound.

        Importance: The mirror stays in storage for the audit trail.
        Alternatives: Hard-delete the row.
        """

        event = self._active_event(event_id)
        connection = self.credentials.require_active(event.provider)
        if self._pushes(connection, event):
            client = self.registry.get(connection.provider)
            live = replace(connection, access_token=self.credentials.access_token(connection))
            try:
                self.pusher.push(
                    lambda: client.remove_event(live, event.external_id), f"removal of {event.external_id}"
                )
            except NotFound:
                logger.info("Event %s was already removed from %s.", event.external_id, connection.provider.value)
        self.store.save_calendar_event(replace(event, state=EventState.DELETED, last_synced_at=utcnow()))
        logger.info("Deleted event %s.", event.id)

    def _active_event(self, event_id: str) -> SyncedCalendarEvent:
        event = self.get_event(event_id)
        if event.state == EventState.DELETED:
            raise NotFound(f"Calendar event {event_id} was deleted")
        return event

    def _pushes(self, connection: Connection, event: SyncedCalendarEvent) -> bool:
        return connection.settings.sync_direction.includes_outbound and not event.external_id.startswith(
            LOCAL_ID_PREFIX
        )


@dataclass(frozen=True)
class EmailService:
    """Summary: Lists email mirrors and threads and sends outbound mail.

    Importance: Backs the CRM inbox and client communication history.
    Alternatives: Read mail straight from the provider on each request.
    """

    store: SqliteStore
    registry: ProviderRegistry
    credentials: CredentialService
    pusher: OutboundPusher
    user_id: str

    def list_emails(self, criteria: EmailFilter | None = None) -> list[SyncedEmail]:
        return self.store.list_emails(self.user_id, criteria or EmailFilter())

    def get_email(self, email_id: str) -> SyncedEmail:
        email = self.store.get_email(self.user_id, email_id)
        if email is None:
            raise NotFound(f"Email {email_id} not found")
        return email

    def send_email(self, provider: Provider | str, draft: EmailDraft) -> SyncedEmail:
        """Summary: Send a message (when outbound) and mirror it in Sent Items.

        Importance: Linked sends count as client communication right away.
        Alternatives: Wait for the next inbound sync to mirror sent mail.
        """

        if not draft.to:
            raise InvalidRequest("At least one recipient is required")
        if not draft.subject.strip():
            raise InvalidRequest("Subject is required")
        connection = self.credentials.require_active(provider)
        pushed = connection.settings.sync_direction.includes_outbound
        if pushed:
            client = self.registry.get(connection.provider)
            live = replace(connection, access_token=self.credentials.access_token(connection))
            external_id = self.pusher.push(lambda: client.push_email(live, draft), f"email '{draft.subject}'")
        else:
            external_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4()}"
        now = utcnow()
        email = SyncedEmail(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            provider=connection.provider,
            external_id=external_id,
            conversation_id=None,
            subject=draft.subject,
            body=draft.body,
            body_preview=draft.body[:200],
            body_content_type=draft.body_content_type,
            sender=EmailAddress(email=connection.external_email or self.user_id),
            to=list(draft.to),
            cc=list(draft.cc),
            received_at=now,
            sent_at=now,
            is_read=True,
            has_attachments=False,
            attachments=[],
            importance=draft.importance,
            folder_name="Sent Items",
            categories=[],
            sync_direction=SyncDirection.OUTBOUND,
            remote_modified_at=None,
            content_hash=None,
            last_synced_at=now,
            raw_data={"source": "crm", "pushed": pushed},
            linked_household_id=draft.linked_household_id,
            linked_person_id=draft.linked_person_id,
            is_client_communication=bool(draft.linked_household_id or draft.linked_person_id),
        )
        self.store.save_email(email)
        logger.info("Sent %s email %s (pushed=%s).", connection.provider.value, external_id, pushed)
        return email

    def list_threads(self, household_id: str | None = None) -> list[EmailThread]:
        return self.store.list_threads(self.user_id, household_id)

    def get_thread(self, conversation_id: str) -> list[SyncedEmail]:
        emails = self.store.list_conversation_emails(self.user_id, conversation_id)
        if not emails:
            raise NotFound(f"Thread {conversation_id} not found")
        return emails


@dataclass(frozen=True)
class AutoLinkResult:
    emails_scanned: int = 0
    emails_linked: int = 0
    events_scanned: int = 0
    events_linked: int = 0


@dataclass(frozen=True)
class LinkingService:
    """Summary: Associates mirrors with CRM households and persons.

    Importance: Household and person links are set independently of each other and of sync.
    Alternatives: Store links in a separate join table.
    """

    store: SqliteStore
    user_id: str

    def link_calendar_event(
        self, event_id: str, household_id: str | None = None, person_id: str | None = None
    ) -> SyncedCalendarEvent:
        changes: dict[str, Any] = {}
        if household_id is not None:
            changes["linked_household_id"] = household_id
        if person_id is not None:
            changes["linked_person_id"] = person_id
        if not self.store.update_event_links(self.user_id, event_id, changes):
            raise NotFound(f"Calendar event {event_id} not found")
        return self._event(event_id)

    def unlink_calendar_event(self, event_id: str) -> SyncedCalendarEvent:
        changes = {"linked_household_id": None, "linked_person_id": None}
        if not self.store.update_event_links(self.user_id, event_id, changes):
            raise NotFound(f"Calendar event {event_id} not found")
        return self._event(event_id)

    def link_email(
        self,
        email_id: str,
        household_id: str | None = None,
        person_id: str | None = None,
        notes: str | None = None,
        is_client_communication: bool | None = None,
    ) -> SyncedEmail:
        """Summary: Apply a partial link update to one email.

        Importance: Omitted fields are left untouched, which is distinct from clearing them.
        Alternatives: Replace every link field on each call.
        """

        changes: dict[str, Any] = {}
        if household_id is not None:
            changes["linked_household_id"] = household_id
        if person_id is not None:
            changes["linked_person_id"] = person_id
        if notes is not None:
            changes["internal_notes"] = notes
        if is_client_communication is not None:
            changes["is_client_communication"] = is_client_communication
        if not self.store.update_email_links(self.user_id, email_id, changes):
            raise NotFound(f"Email {email_id} not found")
        return self._email(email_id)

    def unlink_email(self, email_id: str) -> SyncedEmail:
        changes = {"linked_household_id": None, "linked_person_id": None}
        if not self.store.update_email_links(self.user_id, email_id, changes):
            raise NotFound(f"Email {email_id} not found")
        return self._email(email_id)

    def archive_emails(self, email_ids: list[str]) -> int:
        affected = self.store.archive_emails(self.user_id, list(dict.fromkeys(email_ids)))
        logger.info("Archived %s of %s requested emails.", affected, len(email_ids))
        return affected

    def auto_link(self, directory: PersonDirectory) -> AutoLinkResult:
        """Summary: Link unlinked mirrors to persons by exact address match.

        Importance: Only items with neither link set are touched, so re-runs are safe.
        Alternatives: Fuzzy-match display names against CRM persons.
        """

        emails = self.store.list_unlinked_emails(self.user_id)
        emails_linked = 0
        for email in emails:
            person = match_person(directory, email.addresses())
            if person is None:
                continue
            changes: dict[str, Any] = {"linked_person_id": person.person_id, "is_client_communication": True}
            if person.household_id:
                changes["linked_household_id"] = person.household_id
            if self.store.update_email_links(self.user_id, email.id, changes):
                emails_linked += 1
        events = self.store.list_unlinked_calendar_events(self.user_id)
        events_linked = 0
        for event in events:
            person = match_person(directory, [item.email for item in event.attendees])
            if person is None:
                continue
            event_changes: dict[str, Any] = {"linked_person_id": person.person_id}
            if person.household_id:
                event_changes["linked_household_id"] = person.household_id
            if self.store.update_event_links(self.user_id, event.id, event_changes):
                events_linked += 1
        result = AutoLinkResult(
            emails_scanned=len(emails),
            emails_linked=emails_linked,
            events_scanned=len(events),
            events_linked=events_linked,
        )
        logger.info("Auto-linked %s emails and %s events.", emails_linked, events_linked)
        return result

    def _event(self, event_id: str) -> SyncedCalendarEvent:
        event = self.store.get_calendar_event(self.user_id, event_id)
        if event is None:
            raise NotFound(f"Calendar event {event_id} not found")
        return event

    def _email(self, email_id: str) -> SyncedEmail:
        email = self.store.get_email(self.user_id, email_id)
        if email is None:
            raise NotFound(f"Email {email_id} not found")
        return email


@dataclass(frozen=True)
class SyncLogService:
    """Summary: Read access to the sync audit trail.

    Importance: Lets users see what each sync run did.
    Alternatives: Use raw database queries or log files.
    """

    store: SqliteStore
    user_id: str

    def list_logs(self, provider: Provider | str | None = None, limit: int = 20) -> list[SyncLog]:
        resolved = Provider.parse(provider) if provider is not None else None
        if limit < 1:
            raise InvalidRequest("limit must be positive")
        return self.store.list_sync_logs(self.user_id, resolved, limit)

    def get_log(self, log_id: str) -> SyncLog:
        log = self.store.get_sync_log(self.user_id, log_id)
        if log is None:
            raise NotFound(f"Sync log {log_id} not found")
        return log


@dataclass(frozen=True)
class StatsService:
    """Summary: Provides lightweight rollups over the synced collections.

    Importance: Enables dashboards and quick health checks.
    Alternatives: Calculate counts directly in the API or UI.
    """

    store: SqliteStore
    user_id: str
    upcoming_window_days: int = 30
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def snapshot(self) -> dict[str, Any]:
        """Summary: Return current counts for the user.

        Importance: Computed on every call so it always reflects storage.
        Alternatives: Cache counts and invalidate on sync.
        """

        now = self.clock()
        return {
            "total_calendar_events": self.store.count_calendar_events(self.user_id),
            "upcoming_events": self.store.count_upcoming_events(
                self.user_id, now, now + timedelta(days=self.upcoming_window_days)
            ),
            "total_emails": self.store.count_emails(self.user_id),
            "unread_emails": self.store.count_emails(self.user_id, is_read=False),
            "client_emails": self.store.count_emails(self.user_id, client_only=True),
            "last_sync_at": self.store.latest_sync_at(self.user_id),
        }


def _validate_event_times(subject: str, start_time: datetime, end_time: datetime) -> None:
    if not subject.strip():
        raise InvalidRequest("Subject is required")
    if end_time < start_time:
        raise InvalidRequest("Event end time is before its start time")


def _expiry(now: datetime, expires_in_seconds: int | None) -> datetime | None:
    if expires_in_seconds is None:
        return None
    return now + timedelta(seconds=expires_in_seconds)


def _aware(value: datetime) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise InvalidRequest("Event times are required")
    return parsed
