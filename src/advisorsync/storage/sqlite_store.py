"""Summary: SQLite storage implementation for AdvisorSync.

Importance: Persists connections, mirrors, threads, and sync logs with atomic per-item upserts.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator

from advisorsync.models import (
    Attachment,
    Attendee,
    CalendarFilter,
    Connection,
    ConnectionSettings,
    ConnectionStatus,
    EmailAddress,
    EmailFilter,
    EmailThread,
    EventState,
    Provider,
    SyncDirection,
    SyncedCalendarEvent,
    SyncedEmail,
    SyncErrorDetail,
    SyncLog,
    SyncScope,
    SyncStatus,
    parse_timestamp,
)


class UpsertOutcome(str, Enum):
    """Summary: Result of reconciling one remote item against its mirror.

    Importance: Drives the sync log counters.
    Alternatives: Return booleans for created and updated.
    """

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


EVENT_LINK_COLUMNS = frozenset({"linked_household_id", "linked_person_id"})
EMAIL_LINK_COLUMNS = frozenset(
    {"linked_household_id", "linked_person_id", "internal_notes", "is_client_communication"}
)

# Per-scope fetch cursors on the connections row.
SCOPE_CURSOR_COLUMNS = {SyncScope.CALENDAR: "calendar_synced_at", SyncScope.EMAIL: "email_synced_at"}

EVENT_COLUMNS = (
    "id, user_id, provider, external_id, subject, body, location, start_time, end_time, is_all_day, "
    "online_meeting_url, attendees, sync_direction, state, remote_modified_at, content_hash, "
    "last_synced_at, raw_data, linked_household_id, linked_person_id"
)
EMAIL_COLUMNS = (
    "id, user_id, provider, external_id, conversation_id, subject, body, body_preview, "
    "body_content_type, sender, to_recipients, cc_recipients, received_at, sent_at, is_read, "
    "has_attachments, attachments, importance, folder_name, categories, sync_direction, "
    "remote_modified_at, content_hash, last_synced_at, raw_data, linked_household_id, "
    "linked_person_id, internal_notes, is_archived, is_client_communication"
)


class SqliteStore:
    """Summary: SQLite-backed storage for AdvisorSync.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for sync runs and queries.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    status TEXT NOT NULL,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at TEXT,
                    scopes TEXT NOT NULL,
                    settings TEXT NOT NULL,
                    external_email TEXT,
                    last_sync_at TEXT,
                    last_sync_error TEXT,
                    calendar_synced_at TEXT,
                    email_synced_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(user_id, provider)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT,
                    location TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    is_all_day INTEGER NOT NULL,
                    online_meeting_url TEXT,
                    attendees TEXT NOT NULL,
                    sync_direction TEXT NOT NULL,
                    state TEXT NOT NULL,
                    remote_modified_at TEXT,
                    content_hash TEXT,
                    last_synced_at TEXT NOT NULL,
                    raw_data TEXT NOT NULL,
                    linked_household_id TEXT,
                    linked_person_id TEXT,
                    UNIQUE(user_id, external_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS emails (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    conversation_id TEXT,
                    subject TEXT NOT NULL,
                    body TEXT,
                    body_preview TEXT,
                    body_content_type TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    to_recipients TEXT NOT NULL,
                    cc_recipients TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    sent_at TEXT,
                    is_read INTEGER NOT NULL,
                    has_attachments INTEGER NOT NULL,
                    attachments TEXT NOT NULL,
                    importance TEXT NOT NULL,
                    folder_name TEXT,
                    categories TEXT NOT NULL,
                    sync_direction TEXT NOT NULL,
                    remote_modified_at TEXT,
                    content_hash TEXT,
                    last_synced_at TEXT NOT NULL,
                    raw_data TEXT NOT NULL,
                    linked_household_id TEXT,
                    linked_person_id TEXT,
                    internal_notes TEXT,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    is_client_communication INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(user_id, external_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS email_threads (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    participants TEXT NOT NULL,
                    message_count INTEGER NOT NULL,
                    last_message_at TEXT NOT NULL,
                    has_unread INTEGER NOT NULL,
                    linked_household_id TEXT,
                    linked_person_id TEXT,
                    UNIQUE(user_id, conversation_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    items_processed INTEGER NOT NULL,
                    items_created INTEGER NOT NULL,
                    items_updated INTEGER NOT NULL,
                    items_deleted INTEGER NOT NULL,
                    errors INTEGER NOT NULL,
                    error_details TEXT NOT NULL
                )
                """
            )
            existing = {row[1] for row in cursor.execute("PRAGMA table_info(connections)")}
            for column in SCOPE_CURSOR_COLUMNS.values():
                if column not in existing:
                    cursor.execute(f"ALTER TABLE connections ADD COLUMN {column} TEXT")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_logs_user ON sync_logs (user_id, started_at)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_emails_conversation ON emails (user_id, conversation_id)"
            )
            connection.commit()

    # Connections

    def get_connection(self, user_id: str, provider: Provider) -> Connection | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM connections WHERE user_id = ? AND provider = ?",
                (user_id, provider.value),
            ).fetchone()
        return _row_to_connection(row) if row else None

    def list_connections(self, user_id: str) -> list[Connection]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT * FROM connections WHERE user_id = ? ORDER BY provider", (user_id,)
            ).fetchall()
        return [_row_to_connection(row) for row in rows]

    def upsert_connection(self, item: Connection) -> Connection:
        """Summary: Insert a connection or replace its credentials on (user, provider).

        Importance: Reconnecting keeps the row id, settings, and sync history.
        Alternatives: Delete and recreate the connection on re-authorization.
        """

        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO connections (
                    id, user_id, provider, status, access_token, refresh_token, token_expires_at,
                    scopes, settings, external_email, last_sync_at, last_sync_error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    status = excluded.status,
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    scopes = excluded.scopes,
                    external_email = COALESCE(excluded.external_email, connections.external_email),
                    last_sync_error = NULL,
                    updated_at = excluded.updated_at
                """,
                (
                    item.id,
                    item.user_id,
                    item.provider.value,
                    item.status.value,
                    item.access_token,
                    item.refresh_token,
                    _ts(item.token_expires_at),
                    json.dumps(item.scopes),
                    json.dumps(item.settings.to_dict()),
                    item.external_email,
                    _ts(item.last_sync_at),
                    item.last_sync_error,
                    _ts(item.created_at),
                    _ts(item.updated_at),
                ),
            )
            row = connection.execute(
                "SELECT * FROM connections WHERE user_id = ? AND provider = ?",
                (item.user_id, item.provider.value),
            ).fetchone()
        return _row_to_connection(row)

    def update_connection_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        scopes: list[str],
        updated_at: datetime,
    ) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                UPDATE connections
                SET access_token = ?, refresh_token = ?, token_expires_at = ?, scopes = ?,
                    status = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    access_token,
                    refresh_token,
                    _ts(token_expires_at),
                    json.dumps(scopes),
                    ConnectionStatus.ACTIVE.value,
                    _ts(updated_at),
                    connection_id,
                ),
            )

    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        updated_at: datetime,
        last_sync_error: str | None = None,
        clear_tokens: bool = False,
    ) -> None:
        """Summary: Move a connection to a new status.

        Importance: Implements disconnect, expiry, and error transitions.
        Alternatives: Rewrite the whole connection row for each transition.
        """

        with self._transaction() as connection:
            if clear_tokens:
                connection.execute(
                    """
                    UPDATE connections
                    SET status = ?, access_token = NULL, refresh_token = NULL, token_expires_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, _ts(updated_at), connection_id),
                )
            else:
                connection.execute(
                    "UPDATE connections SET status = ?, last_sync_error = ?, updated_at = ? WHERE id = ?",
                    (status.value, last_sync_error, _ts(updated_at), connection_id),
                )

    def update_connection_settings(
        self, connection_id: str, settings: ConnectionSettings, updated_at: datetime
    ) -> None:
        with self._transaction() as connection:
            connection.execute(
                "UPDATE connections SET settings = ?, updated_at = ? WHERE id = ?",
                (json.dumps(settings.to_dict()), _ts(updated_at), connection_id),
            )

    def record_sync_outcome(
        self,
        connection_id: str,
        last_sync_at: datetime | None,
        last_sync_error: str | None,
        fetched: Iterable[SyncScope] = (),
    ) -> None:
        """Summary: Store the latest sync outcome on a connection.

        Importance: A failed run keeps the previous cursors; a completed run only
        advances the cursors of the scopes it actually fetched.
        Alternatives: Derive the outcome from the newest sync log.
        """

        with self._transaction() as connection:
            if last_sync_at is None:
                connection.execute(
                    "UPDATE connections SET last_sync_error = ? WHERE id = ?",
                    (last_sync_error, connection_id),
                )
                return
            columns = ["last_sync_at"] + [SCOPE_CURSOR_COLUMNS[scope] for scope in fetched]
            assignments = ", ".join(f"{column} = ?" for column in columns)
            connection.execute(
                f"UPDATE connections SET {assignments}, last_sync_error = ? WHERE id = ?",
                [*(_ts(last_sync_at) for _ in columns), last_sync_error, connection_id],
            )

    def latest_sync_at(self, user_id: str) -> datetime | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT MAX(last_sync_at) FROM connections WHERE user_id = ? AND last_sync_at IS NOT NULL",
                (user_id,),
            ).fetchone()
        return parse_timestamp(row[0]) if row and row[0] else None

    # Calendar events

    def reconcile_calendar_event(self, event: SyncedCalendarEvent) -> UpsertOutcome:
        """Summary: Atomically create, update, or skip a calendar mirror.

        Importance: Serializes concurrent upserts of one external id so the newer write wins.
        Alternatives: Rely on the unique index and retry on IntegrityError.
        """

        with self._transaction() as connection:
            row = connection.execute(
                "SELECT id, remote_modified_at, content_hash FROM calendar_events "
                "WHERE user_id = ? AND external_id = ?",
                (event.user_id, event.external_id),
            ).fetchone()
            if row is None:
                _insert_event(connection, event)
                return UpsertOutcome.CREATED
            if not _supersedes(
                event.remote_modified_at,
                event.content_hash,
                parse_timestamp(row["remote_modified_at"]),
                row["content_hash"],
            ):
                return UpsertOutcome.UNCHANGED
            connection.execute(
                """
                UPDATE calendar_events
                SET subject = ?, body = ?, location = ?, start_time = ?, end_time = ?, is_all_day = ?,
                    online_meeting_url = ?, attendees = ?, state = ?, remote_modified_at = ?,
                    content_hash = ?, last_synced_at = ?, raw_data = ?
                WHERE id = ?
                """,
                (
                    event.subject,
                    event.body,
                    event.location,
                    _ts(event.start_time),
                    _ts(event.end_time),
                    int(event.is_all_day),
                    event.online_meeting_url,
                    _dump_attendees(event.attendees),
                    EventState.ACTIVE.value,
                    _ts(event.remote_modified_at),
                    event.content_hash,
                    _ts(event.last_synced_at),
                    json.dumps(event.raw_data),
                    row["id"],
                ),
            )
            return UpsertOutcome.UPDATED

    def mark_calendar_event_deleted(
        self, user_id: str, external_id: str, remote_modified_at: datetime | None, synced_at: datetime
    ) -> UpsertOutcome:
        """Summary: Soft-delete the mirror of a remotely removed event.

        Importance: Keeps the row for the audit trail instead of dropping it.
        Alternatives: Hard-delete mirrors when the provider removes them.
        """

        with self._transaction() as connection:
            cursor = connection.execute(
                "UPDATE calendar_events "
                "SET state = ?, remote_modified_at = COALESCE(?, remote_modified_at), last_synced_at = ? "
                "WHERE user_id = ? AND external_id = ? AND state = ?",
                (
                    EventState.DELETED.value,
                    _ts(remote_modified_at),
                    _ts(synced_at),
                    user_id,
                    external_id,
                    EventState.ACTIVE.value,
                ),
            )
            return UpsertOutcome.DELETED if cursor.rowcount == 1 else UpsertOutcome.UNCHANGED

    def save_calendar_event(self, event: SyncedCalendarEvent) -> SyncedCalendarEvent:
        """Summary: Write a locally authored calendar mirror.

        Importance: Persists outbound creates, updates, and deletes in one statement.
        Alternatives: Route local writes through reconciliation.
        """

        with self._transaction() as connection:
            connection.execute("DELETE FROM calendar_events WHERE id = ? AND user_id = ?", (event.id, event.user_id))
            _insert_event(connection, event)
        return event

    def get_calendar_event(self, user_id: str, event_id: str) -> SyncedCalendarEvent | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE user_id = ? AND id = ?",
                (user_id, event_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def get_calendar_event_by_external_id(self, user_id: str, external_id: str) -> SyncedCalendarEvent | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def list_calendar_events(self, user_id: str, criteria: CalendarFilter) -> list[SyncedCalendarEvent]:
        """Summary: Query calendar mirrors ordered by start time.

        Importance: Backs the CRM calendar view.
        Alternatives: Filter in Python after loading all rows.
        """

        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if not criteria.include_deleted:
            clauses.append("state = ?")
            params.append(EventState.ACTIVE.value)
        if criteria.start_date is not None:
            clauses.append("start_time >= ?")
            params.append(_ts(criteria.start_date))
        if criteria.end_date is not None:
            clauses.append("start_time <= ?")
            params.append(_ts(criteria.end_date))
        if criteria.linked_household_id:
            clauses.append("linked_household_id = ?")
            params.append(criteria.linked_household_id)
        if criteria.linked_person_id:
            clauses.append("linked_person_id = ?")
            params.append(criteria.linked_person_id)
        query = (
            f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE {' AND '.join(clauses)} "
            "ORDER BY start_time ASC"
        )
        with self._connection() as connection:
            rows = connection.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_unlinked_calendar_events(self, user_id: str) -> list[SyncedCalendarEvent]:
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {EVENT_COLUMNS} FROM calendar_events "
                "WHERE user_id = ? AND state = ? AND linked_household_id IS NULL AND linked_person_id IS NULL "
                "ORDER BY start_time ASC",
                (user_id, EventState.ACTIVE.value),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def update_event_links(self, user_id: str, event_id: str, changes: dict[str, Any]) -> bool:
        return self._update_columns("calendar_events", EVENT_LINK_COLUMNS, user_id, event_id, changes)

    def count_calendar_events(self, user_id: str) -> int:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM calendar_events WHERE user_id = ? AND state = ?",
                (user_id, EventState.ACTIVE.value),
            ).fetchone()
        return int(row[0]) if row else 0

    def count_upcoming_events(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM calendar_events "
                "WHERE user_id = ? AND state = ? AND start_time >= ? AND start_time <= ?",
                (user_id, EventState.ACTIVE.value, _ts(start), _ts(end)),
            ).fetchone()
        return int(row[0]) if row else 0

    # Emails

    def reconcile_email(self, email: SyncedEmail) -> UpsertOutcome:
        """Summary: Atomically create, update, or skip an email mirror and refresh its thread.

        Importance: CRM-owned fields (links, notes, archive flag) survive remote updates.
        Alternatives: Store CRM annotations in a separate table.
        """

        with self._transaction() as connection:
            row = connection.execute(
                "SELECT id, remote_modified_at, content_hash, conversation_id FROM emails "
                "WHERE user_id = ? AND external_id = ?",
                (email.user_id, email.external_id),
            ).fetchone()
            if row is None:
                _insert_email(connection, email)
                outcome = UpsertOutcome.CREATED
            elif _supersedes(
                email.remote_modified_at,
                email.content_hash,
                parse_timestamp(row["remote_modified_at"]),
                row["content_hash"],
            ):
                connection.execute(
                    """
                    UPDATE emails
                    SET conversation_id = ?, subject = ?, body = ?, body_preview = ?, body_content_type = ?,
                        sender = ?, to_recipients = ?, cc_recipients = ?, received_at = ?, sent_at = ?,
                        is_read = ?, has_attachments = ?, attachments = ?, importance = ?, folder_name = ?,
                        categories = ?, remote_modified_at = ?, content_hash = ?, last_synced_at = ?,
                        raw_data = ?
                    WHERE id = ?
                    """,
                    (
                        email.conversation_id,
                        email.subject,
                        email.body,
                        email.body_preview,
                        email.body_content_type,
                        _dump_address(email.sender),
                        _dump_addresses(email.to),
                        _dump_addresses(email.cc),
                        _ts(email.received_at),
                        _ts(email.sent_at),
                        int(email.is_read),
                        int(email.has_attachments),
                        _dump_attachments(email.attachments),
                        email.importance,
                        email.folder_name,
                        json.dumps(email.categories),
                        _ts(email.remote_modified_at),
                        email.content_hash,
                        _ts(email.last_synced_at),
                        json.dumps(email.raw_data),
                        row["id"],
                    ),
                )
                if row["conversation_id"] and row["conversation_id"] != email.conversation_id:
                    _refresh_thread(connection, email.user_id, row["conversation_id"])
                outcome = UpsertOutcome.UPDATED
            else:
                return UpsertOutcome.UNCHANGED
            if email.conversation_id:
                _refresh_thread(connection, email.user_id, email.conversation_id)
        return outcome

    def save_email(self, email: SyncedEmail) -> SyncedEmail:
        with self._transaction() as connection:
            connection.execute("DELETE FROM emails WHERE id = ? AND user_id = ?", (email.id, email.user_id))
            _insert_email(connection, email)
            if email.conversation_id:
                _refresh_thread(connection, email.user_id, email.conversation_id)
        return email

    def get_email(self, user_id: str, email_id: str) -> SyncedEmail | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {EMAIL_COLUMNS} FROM emails WHERE user_id = ? AND id = ?", (user_id, email_id)
            ).fetchone()
        return _row_to_email(row) if row else None

    def get_email_by_external_id(self, user_id: str, external_id: str) -> SyncedEmail | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {EMAIL_COLUMNS} FROM emails WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
        return _row_to_email(row) if row else None

    def list_emails(self, user_id: str, criteria: EmailFilter) -> list[SyncedEmail]:
        """Summary: Query email mirrors newest first.

        Importance: Backs the CRM inbox and client communication views.
        Alternatives: Use SQLite FTS for search.
        """

        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if criteria.start_date is not None:
            clauses.append("received_at >= ?")
            params.append(_ts(criteria.start_date))
        if criteria.end_date is not None:
            clauses.append("received_at <= ?")
            params.append(_ts(criteria.end_date))
        if criteria.folder:
            clauses.append("folder_name = ?")
            params.append(criteria.folder)
        for column, value in (
            ("is_read", criteria.is_read),
            ("has_attachments", criteria.has_attachments),
            ("is_client_communication", criteria.is_client_communication),
            ("is_archived", criteria.is_archived),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(int(value))
        if criteria.linked_household_id:
            clauses.append("linked_household_id = ?")
            params.append(criteria.linked_household_id)
        if criteria.linked_person_id:
            clauses.append("linked_person_id = ?")
            params.append(criteria.linked_person_id)
        if criteria.search:
            pattern = f"%{criteria.search.lower()}%"
            clauses.append("(LOWER(subject) LIKE ? OR LOWER(COALESCE(body_preview, '')) LIKE ?)")
            params.extend([pattern, pattern])
        query = (
            f"SELECT {EMAIL_COLUMNS} FROM emails WHERE {' AND '.join(clauses)} "
            "ORDER BY received_at DESC LIMIT ?"
        )
        params.append(criteria.limit)
        with self._connection() as connection:
            rows = connection.execute(query, params).fetchall()
        return [_row_to_email(row) for row in rows]

    def list_unlinked_emails(self, user_id: str) -> list[SyncedEmail]:
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {EMAIL_COLUMNS} FROM emails "
                "WHERE user_id = ? AND linked_household_id IS NULL AND linked_person_id IS NULL "
                "ORDER BY received_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_email(row) for row in rows]

    def list_conversation_emails(self, user_id: str, conversation_id: str) -> list[SyncedEmail]:
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {EMAIL_COLUMNS} FROM emails WHERE user_id = ? AND conversation_id = ? "
                "ORDER BY received_at ASC",
                (user_id, conversation_id),
            ).fetchall()
        return [_row_to_email(row) for row in rows]

    def update_email_links(self, user_id: str, email_id: str, changes: dict[str, Any]) -> bool:
        """Summary: Apply a partial link/annotation update to one email.

        Importance: Keeps the thread's link in step with its member emails.
        Alternatives: Recompute threads lazily on read.
        """

        with self._transaction() as connection:
            updated = _update_owned_row(connection, "emails", EMAIL_LINK_COLUMNS, user_id, email_id, changes)
            if updated:
                row = connection.execute(
                    "SELECT conversation_id FROM emails WHERE id = ?", (email_id,)
                ).fetchone()
                if row and row["conversation_id"]:
                    _refresh_thread(connection, user_id, row["conversation_id"])
        return updated

    def archive_emails(self, user_id: str, email_ids: list[str]) -> int:
        if not email_ids:
            return 0
        placeholders = ", ".join("?" for _ in email_ids)
        with self._transaction() as connection:
            cursor = connection.execute(
                f"UPDATE emails SET is_archived = 1 WHERE user_id = ? AND id IN ({placeholders})",
                [user_id, *email_ids],
            )
            return cursor.rowcount

    def count_emails(self, user_id: str, is_read: bool | None = None, client_only: bool = False) -> int:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if is_read is not None:
            clauses.append("is_read = ?")
            params.append(int(is_read))
        if client_only:
            clauses.append("is_client_communication = 1")
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT COUNT(*) FROM emails WHERE {' AND '.join(clauses)}", params
            ).fetchone()
        return int(row[0]) if row else 0

    # Threads

    def list_threads(self, user_id: str, household_id: str | None = None, limit: int = 50) -> list[EmailThread]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if household_id:
            clauses.append("linked_household_id = ?")
            params.append(household_id)
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT * FROM email_threads WHERE {' AND '.join(clauses)} "
                "ORDER BY last_message_at DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_thread(row) for row in rows]

    def get_thread(self, user_id: str, conversation_id: str) -> EmailThread | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM email_threads WHERE user_id = ? AND conversation_id = ?",
                (user_id, conversation_id),
            ).fetchone()
        return _row_to_thread(row) if row else None

    # Sync logs

    def insert_sync_log(self, log: SyncLog) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO sync_logs (
                    id, user_id, provider, sync_type, status, started_at, completed_at, items_processed,
                    items_created, items_updated, items_deleted, errors, error_details
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.id,
                    log.user_id,
                    log.provider.value,
                    log.sync_type.value,
                    log.status.value,
                    _ts(log.started_at),
                    _ts(log.completed_at),
                    log.items_processed,
                    log.items_created,
                    log.items_updated,
                    log.items_deleted,
                    log.errors,
                    _dump_error_details(log.error_details),
                ),
            )

    def close_sync_log(self, log: SyncLog) -> bool:
        """Summary: Write the final state of a started sync log.

        Importance: Only rows still in the started state match, so closed logs never change.
        Alternatives: Enforce immutability with a trigger.
        """

        with self._transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_logs
                SET status = ?, completed_at = ?, items_processed = ?, items_created = ?,
                    items_updated = ?, items_deleted = ?, errors = ?, error_details = ?
                WHERE id = ? AND status = ?
                """,
                (
                    log.status.value,
                    _ts(log.completed_at),
                    log.items_processed,
                    log.items_created,
                    log.items_updated,
                    log.items_deleted,
                    log.errors,
                    _dump_error_details(log.error_details),
                    log.id,
                    SyncStatus.STARTED.value,
                ),
            )
            return cursor.rowcount == 1

    def list_sync_logs(self, user_id: str, provider: Provider | None = None, limit: int = 20) -> list[SyncLog]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if provider is not None:
            clauses.append("provider = ?")
            params.append(provider.value)
        params.append(limit)
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT * FROM sync_logs WHERE {' AND '.join(clauses)} "
                "ORDER BY started_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_log(row) for row in rows]

    def get_sync_log(self, user_id: str, log_id: str) -> SyncLog | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM sync_logs WHERE user_id = ? AND id = ?", (user_id, log_id)
            ).fetchone()
        return _row_to_log(row) if row else None

    def _update_columns(
        self, table: str, allowed: frozenset[str], user_id: str, row_id: str, changes: dict[str, Any]
    ) -> bool:
        with self._transaction() as connection:
            return _update_owned_row(connection, table, allowed, user_id, row_id, changes)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=30)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        finally:
            connection.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Summary: Run statements inside one write-locked transaction.

        Importance: BEGIN IMMEDIATE takes the write lock before the first read.
        Alternatives: Use optimistic retries on constraint violations.
        """

        with self._connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()


def _supersedes(
    incoming_modified: datetime | None,
    incoming_hash: str | None,
    stored_modified: datetime | None,
    stored_hash: str | None,
) -> bool:
    # Revision timestamps win when both sides have one; otherwise compare fingerprints.
    if stored_modified is not None:
        # An untimestamped revision cannot prove it is newer than a timestamped mirror.
        return incoming_modified is not None and incoming_modified > stored_modified
    return incoming_hash is None or incoming_hash != stored_hash


def _update_owned_row(
    connection: sqlite3.Connection,
    table: str,
    allowed: frozenset[str],
    user_id: str,
    row_id: str,
    changes: dict[str, Any],
) -> bool:
    """Summary: Update a whitelisted subset of columns on one owned row.

    Importance: Gives partial-update semantics where omitted fields stay untouched.
    Alternatives: Read-modify-write the full dataclass.
    """

    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported columns for {table}: {sorted(unknown)}")
    if not changes:
        row = connection.execute(
            f"SELECT 1 FROM {table} WHERE id = ? AND user_id = ?", (row_id, user_id)
        ).fetchone()
        return row is not None
    assignments = ", ".join(f"{column} = ?" for column in changes)
    values = [int(value) if isinstance(value, bool) else value for value in changes.values()]
    cursor = connection.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ? AND user_id = ?",
        [*values, row_id, user_id],
    )
    return cursor.rowcount == 1


def _refresh_thread(connection: sqlite3.Connection, user_id: str, conversation_id: str) -> None:
    """Summary: Recompute the thread aggregate for one conversation.

    Importance: Threads are derived, so every member change rebuilds them.
    Alternatives: Maintain counters incrementally.
    """

    rows = connection.execute(
        "SELECT provider, subject, sender, to_recipients, cc_recipients, received_at, is_read, "
        "linked_household_id, linked_person_id FROM emails "
        "WHERE user_id = ? AND conversation_id = ? ORDER BY received_at ASC",
        (user_id, conversation_id),
    ).fetchall()
    if not rows:
        connection.execute(
            "DELETE FROM email_threads WHERE user_id = ? AND conversation_id = ?", (user_id, conversation_id)
        )
        return
    participants: dict[str, dict[str, Any]] = {}
    for row in rows:
        for entry in [json.loads(row["sender"])] + json.loads(row["to_recipients"]) + json.loads(row["cc_recipients"]):
            participants.setdefault(entry["email"].lower(), entry)
    latest = rows[-1]
    linked = next(
        (row for row in reversed(rows) if row["linked_household_id"] or row["linked_person_id"]), None
    )
    connection.execute(
        """
        INSERT INTO email_threads (
            id, user_id, provider, conversation_id, subject, participants, message_count,
            last_message_at, has_unread, linked_household_id, linked_person_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, conversation_id) DO UPDATE SET
            subject = excluded.subject,
            participants = excluded.participants,
            message_count = excluded.message_count,
            last_message_at = excluded.last_message_at,
            has_unread = excluded.has_unread,
            linked_household_id = excluded.linked_household_id,
            linked_person_id = excluded.linked_person_id
        """,
        (
            str(uuid.uuid4()),
            user_id,
            latest["provider"],
            conversation_id,
            latest["subject"],
            json.dumps(list(participants.values())),
            len(rows),
            latest["received_at"],
            int(any(not row["is_read"] for row in rows)),
            linked["linked_household_id"] if linked else None,
            linked["linked_person_id"] if linked else None,
        ),
    )


def _insert_event(connection: sqlite3.Connection, event: SyncedCalendarEvent) -> None:
    connection.execute(
        f"INSERT INTO calendar_events ({EVENT_COLUMNS}) VALUES ({', '.join('?' * 20)})",
        (
            event.id,
            event.user_id,
            event.provider.value,
            event.external_id,
            event.subject,
            event.body,
            event.location,
            _ts(event.start_time),
            _ts(event.end_time),
            int(event.is_all_day),
            event.online_meeting_url,
            _dump_attendees(event.attendees),
            event.sync_direction.value,
            event.state.value,
            _ts(event.remote_modified_at),
            event.content_hash,
            _ts(event.last_synced_at),
            json.dumps(event.raw_data),
            event.linked_household_id,
            event.linked_person_id,
        ),
    )


def _insert_email(connection: sqlite3.Connection, email: SyncedEmail) -> None:
    connection.execute(
        f"INSERT INTO emails ({EMAIL_COLUMNS}) VALUES ({', '.join('?' * 30)})",
        (
            email.id,
            email.user_id,
            email.provider.value,
            email.external_id,
            email.conversation_id,
            email.subject,
            email.body,
            email.body_preview,
            email.body_content_type,
            _dump_address(email.sender),
            _dump_addresses(email.to),
            _dump_addresses(email.cc),
            _ts(email.received_at),
            _ts(email.sent_at),
            int(email.is_read),
            int(email.has_attachments),
            _dump_attachments(email.attachments),
            email.importance,
            email.folder_name,
            json.dumps(email.categories),
            email.sync_direction.value,
            _ts(email.remote_modified_at),
            email.content_hash,
            _ts(email.last_synced_at),
            json.dumps(email.raw_data),
            email.linked_household_id,
            email.linked_person_id,
            email.internal_notes,
            int(email.is_archived),
            int(email.is_client_communication),
        ),
    )


def _row_to_connection(row: sqlite3.Row) -> Connection:
    return Connection(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        status=ConnectionStatus(row["status"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=parse_timestamp(row["token_expires_at"]),
        scopes=json.loads(row["scopes"]),
        settings=ConnectionSettings.from_dict(json.loads(row["settings"])),
        external_email=row["external_email"],
        last_sync_at=parse_timestamp(row["last_sync_at"]),
        last_sync_error=row["last_sync_error"],
        created_at=_required_ts(row["created_at"]),
        updated_at=_required_ts(row["updated_at"]),
        calendar_synced_at=parse_timestamp(row["calendar_synced_at"]),
        email_synced_at=parse_timestamp(row["email_synced_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> SyncedCalendarEvent:
    return SyncedCalendarEvent(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        external_id=row["external_id"],
        subject=row["subject"],
        body=row["body"],
        location=row["location"],
        start_time=_required_ts(row["start_time"]),
        end_time=_required_ts(row["end_time"]),
        is_all_day=bool(row["is_all_day"]),
        online_meeting_url=row["online_meeting_url"],
        attendees=[Attendee(**item) for item in json.loads(row["attendees"])],
        sync_direction=SyncDirection(row["sync_direction"]),
        state=EventState(row["state"]),
        remote_modified_at=parse_timestamp(row["remote_modified_at"]),
        content_hash=row["content_hash"],
        last_synced_at=_required_ts(row["last_synced_at"]),
        raw_data=json.loads(row["raw_data"]),
        linked_household_id=row["linked_household_id"],
        linked_person_id=row["linked_person_id"],
    )


def _row_to_email(row: sqlite3.Row) -> SyncedEmail:
    return SyncedEmail(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        external_id=row["external_id"],
        conversation_id=row["conversation_id"],
        subject=row["subject"],
        body=row["body"],
        body_preview=row["body_preview"],
        body_content_type=row["body_content_type"],
        sender=EmailAddress(**json.loads(row["sender"])),
        to=[EmailAddress(**item) for item in json.loads(row["to_recipients"])],
        cc=[EmailAddress(**item) for item in json.loads(row["cc_recipients"])],
        received_at=_required_ts(row["received_at"]),
        sent_at=parse_timestamp(row["sent_at"]),
        is_read=bool(row["is_read"]),
        has_attachments=bool(row["has_attachments"]),
        attachments=[Attachment(**item) for item in json.loads(row["attachments"])],
        importance=row["importance"],
        folder_name=row["folder_name"],
        categories=json.loads(row["categories"]),
        sync_direction=SyncDirection(row["sync_direction"]),
        remote_modified_at=parse_timestamp(row["remote_modified_at"]),
        content_hash=row["content_hash"],
        last_synced_at=_required_ts(row["last_synced_at"]),
        raw_data=json.loads(row["raw_data"]),
        linked_household_id=row["linked_household_id"],
        linked_person_id=row["linked_person_id"],
        internal_notes=row["internal_notes"],
        is_archived=bool(row["is_archived"]),
        is_client_communication=bool(row["is_client_communication"]),
    )


def _row_to_thread(row: sqlite3.Row) -> EmailThread:
    return EmailThread(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        conversation_id=row["conversation_id"],
        subject=row["subject"],
        participants=[EmailAddress(**item) for item in json.loads(row["participants"])],
        message_count=int(row["message_count"]),
        last_message_at=_required_ts(row["last_message_at"]),
        has_unread=bool(row["has_unread"]),
        linked_household_id=row["linked_household_id"],
        linked_person_id=row["linked_person_id"],
    )


def _row_to_log(row: sqlite3.Row) -> SyncLog:
    return SyncLog(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        sync_type=SyncScope(row["sync_type"]),
        status=SyncStatus(row["status"]),
        started_at=_required_ts(row["started_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        items_processed=int(row["items_processed"]),
        items_created=int(row["items_created"]),
        items_updated=int(row["items_updated"]),
        items_deleted=int(row["items_deleted"]),
        errors=int(row["errors"]),
        error_details=[SyncErrorDetail(**item) for item in json.loads(row["error_details"])],
    )


def _dump_attendees(attendees: list[Attendee]) -> str:
    return json.dumps(
        [
            {"email": item.email, "name": item.name, "response": item.response, "is_organizer": item.is_organizer}
            for item in attendees
        ]
    )


def _dump_address(address: EmailAddress) -> str:
    return json.dumps({"email": address.email, "name": address.name})


def _dump_addresses(addresses: list[EmailAddress]) -> str:
    return json.dumps([{"email": item.email, "name": item.name} for item in addresses])


def _dump_attachments(attachments: list[Attachment]) -> str:
    return json.dumps(
        [
            {"id": item.id, "name": item.name, "content_type": item.content_type, "size": item.size}
            for item in attachments
        ]
    )


def _dump_error_details(details: list[SyncErrorDetail]) -> str:
    return json.dumps([{"message": item.message, "item_id": item.item_id} for item in details])


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _required_ts(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("Stored timestamp is empty")
    return parsed
