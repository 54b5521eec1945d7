"""Summary: Sync reconciliation engine and outbound push policy.

Importance: Mirrors provider calendars and mailboxes into local storage with one audit log per run.
Alternatives: Run provider sync through a task queue such as Celery.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

from advisorsync.config import AppConfig
from advisorsync.directory import PersonDirectory, match_person
from advisorsync.errors import (
    IntegrationError,
    IntegrationNotActive,
    InvalidRequest,
    ProviderAuthRevoked,
    ProviderTransientError,
    SyncAlreadyInProgress,
)
from advisorsync.models import (
    Connection,
    ConnectionSettings,
    EventState,
    Provider,
    RemoteEmail,
    RemoteEvent,
    SyncDirection,
    SyncedCalendarEvent,
    SyncedEmail,
    SyncLog,
    SyncScope,
    SyncStatus,
    parse_timestamp,
    utcnow,
)
from advisorsync.providers import ProviderClient, ProviderRegistry
from advisorsync.storage.sqlite_store import SqliteStore, UpsertOutcome

if TYPE_CHECKING:
    from advisorsync.services import CredentialService


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that stay scoped to one remote item.
ITEM_ERRORS = (ProviderTransientError, KeyError, ValueError, TypeError, sqlite3.Error)


class SyncGuard:
    """Summary: Rejects overlapping sync runs for the same user and provider.

    Importance: Two runs on one pair would race on the same log and connection row.
    Alternatives: Block the second caller until the first run finishes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[tuple[str, Provider]] = set()

    @contextmanager
    def hold(self, user_id: str, provider: Provider) -> Iterator[None]:
        key = (user_id, provider)
        with self._lock:
            if key in self._active:
                raise SyncAlreadyInProgress(f"A {provider.value} sync is already running for this user")
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    def is_running(self, user_id: str, provider: Provider) -> bool:
        with self._lock:
            return (user_id, provider) in self._active


class KeyedLocks:
    """Summary: Hands out one lock per key.

    Importance: Token refresh is exclusive per connection without a global lock.
    Alternatives: Use a single lock for all refreshes.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


@dataclass(frozen=True)
class OutboundPusher:
    """Summary: Runs a provider push with retries on transient failures.

    Importance: Outbound actions stay synchronous while riding out brief provider hiccups.
    Alternatives: Queue failed pushes for a background retry worker.
    """

    attempts: int = 3
    backoff_seconds: float = 0.5
    sleep: Callable[[float], None] = time.sleep

    def push(self, action: Callable[[], T], description: str) -> T:
        total = max(1, self.attempts)
        attempt = 1
        while True:
            try:
                return action()
            except ProviderTransientError as exc:
                if attempt >= total:
                    logger.error("Push %s failed after %s attempts: %s", description, total, exc)
                    raise
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "Push %s failed on attempt %s of %s, retrying in %.2fs: %s",
                    description,
                    attempt,
                    total,
                    delay,
                    exc,
                )
                self.sleep(delay)
                attempt += 1


@dataclass
class SyncEngine:
    """Summary: Reconciles remote items for one user against local mirrors.

    Importance: Owns the only write path for sync logs.
    Alternatives: Let each provider client write mirrors directly.
    """

    store: SqliteStore
    registry: ProviderRegistry
    credentials: "CredentialService"
    config: AppConfig
    guard: SyncGuard
    user_id: str
    directory: PersonDirectory | None = None
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def run_sync(
        self,
        provider: Provider | str,
        scope: SyncScope | str = SyncScope.FULL,
        since: datetime | None = None,
    ) -> SyncLog:
        """Summary: Run one sync pass and return its closed log.

        Importance: Item failures land in the log; only connection-level errors raise.
        Alternatives: Raise on the first failing item.
        """

        resolved = Provider.parse(provider)
        sync_type = _parse_scope(scope)
        since = _parse_since(since)
        client = self.registry.get(resolved)
        self._require_active(resolved)
        with self.guard.hold(self.user_id, resolved):
            connection = self._require_active(resolved)
            log = SyncLog(
                id=str(uuid.uuid4()),
                user_id=self.user_id,
                provider=resolved,
                sync_type=sync_type,
                status=SyncStatus.STARTED,
                started_at=self.clock(),
            )
            self.store.insert_sync_log(log)
            logger.info("Sync %s started for %s (%s).", log.id, resolved.value, sync_type.value)
            try:
                fetched = self._run_scopes(client, connection, sync_type, since, log)
            except IntegrationError as exc:
                logger.error("Sync %s failed: %s", log.id, exc)
                return self._fail(connection, log, exc)
            except Exception as exc:
                logger.exception("Sync %s failed unexpectedly.", log.id)
                return self._fail(connection, log, exc)
            log.status = SyncStatus.COMPLETED
            log.completed_at = self.clock()
            self.store.close_sync_log(log)
            self.store.record_sync_outcome(connection.id, log.started_at, None, fetched)
            logger.info(
                "Sync %s completed: processed=%s created=%s updated=%s deleted=%s errors=%s.",
                log.id,
                log.items_processed,
                log.items_created,
                log.items_updated,
                log.items_deleted,
                log.errors,
            )
        return log

    def _run_scopes(
        self,
        client: ProviderClient,
        connection: Connection,
        scope: SyncScope,
        since: datetime | None,
        log: SyncLog,
    ) -> list[SyncScope]:
        """Summary: Fetch and reconcile each item scope of one run.

        Importance: Each scope reads from its own cursor, so a run that skips a scope
        leaves that scope's backlog for the next run that fetches it.
        Alternatives: Share one connection-wide cursor across scopes.
        """

        token = self.credentials.access_token(connection)
        live = replace(connection, access_token=token)
        fetched: list[SyncScope] = []
        for sub_scope in expand_scope(scope, connection.settings):
            if sub_scope != SyncScope.CONTACTS and not connection.settings.sync_direction.includes_inbound:
                logger.info("Skipping inbound %s sync for an outbound-only connection.", sub_scope.value)
                continue
            window = _later(since, connection.synced_at(sub_scope))
            if sub_scope == SyncScope.CALENDAR:
                remote_events = client.fetch_changed_calendar_events(live, window)
                logger.info("Fetched %s changed calendar events.", len(remote_events))
                self._apply(
                    remote_events,
                    lambda item: self._reconcile_event(client, live, item, log.started_at),
                    log,
                )
                fetched.append(sub_scope)
            elif sub_scope == SyncScope.EMAIL:
                remote_emails = client.fetch_changed_emails(live, window)
                logger.info("Fetched %s changed emails.", len(remote_emails))
                self._apply(
                    remote_emails,
                    lambda item: self._reconcile_email(client, live, item, log.started_at),
                    log,
                )
                fetched.append(sub_scope)
            else:
                logger.info("Contacts sync has no item handler; nothing to process.")
        return fetched

    def _apply(
        self,
        items: list[Any],
        reconcile: Callable[[Any], UpsertOutcome],
        log: SyncLog,
    ) -> None:
        """Summary: Fan items out over the worker pool and fold outcomes into the log.

        Importance: One bad item is recorded and skipped instead of aborting the batch.
        Alternatives: Process items sequentially.
        """

        if not items:
            return
        workers = max(1, min(self.config.sync_workers, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="advisorsync-sync") as pool:
            submitted: list[tuple[Any, Future[UpsertOutcome]]] = [
                (item, pool.submit(reconcile, item)) for item in items
            ]
            for item, future in submitted:
                log.items_processed += 1
                try:
                    outcome = future.result()
                except ITEM_ERRORS as exc:
                    item_id = getattr(exc, "item_id", None) or item.external_id or None
                    message = _describe(exc)
                    log.record_error(message, item_id)
                    logger.warning("Item %s failed during sync %s: %s", item_id, log.id, message)
                    continue
                if outcome == UpsertOutcome.CREATED:
                    log.items_created += 1
                elif outcome == UpsertOutcome.UPDATED:
                    log.items_updated += 1
                elif outcome == UpsertOutcome.DELETED:
                    log.items_deleted += 1

    def _reconcile_event(
        self, client: ProviderClient, connection: Connection, remote: RemoteEvent, synced_at: datetime
    ) -> UpsertOutcome:
        if not remote.external_id:
            raise ValueError("Remote event has no id")
        if remote.deleted:
            return self.store.mark_calendar_event_deleted(
                self.user_id, remote.external_id, remote.modified_at, synced_at
            )
        fields = client.parse_event(remote)
        if fields.end_time < fields.start_time:
            raise ValueError("Event ends before it starts")
        event = SyncedCalendarEvent(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            provider=connection.provider,
            external_id=remote.external_id,
            subject=fields.subject,
            body=fields.body,
            location=fields.location,
            start_time=fields.start_time,
            end_time=fields.end_time,
            is_all_day=fields.is_all_day,
            online_meeting_url=fields.online_meeting_url,
            attendees=list(fields.attendees),
            sync_direction=SyncDirection.INBOUND,
            state=EventState.ACTIVE,
            remote_modified_at=remote.modified_at,
            content_hash=fingerprint(remote.payload),
            last_synced_at=synced_at,
            raw_data=remote.payload,
        )
        if connection.settings.auto_link_entities and self.directory is not None:
            person = match_person(self.directory, [item.email for item in event.attendees])
            if person is not None:
                event.linked_person_id = person.person_id
                event.linked_household_id = person.household_id
        return self.store.reconcile_calendar_event(event)

    def _reconcile_email(
        self, client: ProviderClient, connection: Connection, remote: RemoteEmail, synced_at: datetime
    ) -> UpsertOutcome:
        if not remote.external_id:
            raise ValueError("Remote email has no id")
        if remote.deleted:
            logger.debug("Ignoring remote removal of email %s.", remote.external_id)
            return UpsertOutcome.UNCHANGED
        fields = client.parse_email(remote)
        email = SyncedEmail(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            provider=connection.provider,
            external_id=remote.external_id,
            conversation_id=fields.conversation_id,
            subject=fields.subject,
            body=fields.body,
            body_preview=fields.body_preview,
            body_content_type=fields.body_content_type,
            sender=fields.sender,
            to=list(fields.to),
            cc=list(fields.cc),
            received_at=fields.received_at,
            sent_at=fields.sent_at,
            is_read=fields.is_read,
            has_attachments=fields.has_attachments,
            attachments=list(fields.attachments),
            importance=fields.importance,
            folder_name=fields.folder_name,
            categories=list(fields.categories),
            sync_direction=SyncDirection.INBOUND,
            remote_modified_at=remote.modified_at,
            content_hash=fingerprint(remote.payload),
            last_synced_at=synced_at,
            raw_data=remote.payload,
        )
        settings = connection.settings
        if settings.auto_link_entities and self.directory is not None:
            person = match_person(self.directory, email.addresses())
            if person is not None:
                email.linked_person_id = person.person_id
                email.linked_household_id = person.household_id
                email.is_client_communication = True
        email.is_archived = should_auto_archive(settings, email)
        return self.store.reconcile_email(email)

    def _require_active(self, provider: Provider) -> Connection:
        connection = self.credentials.get_connection(provider)
        if not connection.is_active:
            raise IntegrationNotActive(
                f"{provider.value} connection is {connection.status.value}; reconnect to sync"
            )
        return connection

    def _fail(self, connection: Connection, log: SyncLog, exc: Exception) -> SyncLog:
        """Summary: Close the log as failed and record the failure on the connection.

        Importance: Upserts already applied in the run are kept.
        Alternatives: Roll back every mirror written by the run.
        """

        message = _describe(exc)
        log.record_error(message)
        log.status = SyncStatus.FAILED
        log.completed_at = self.clock()
        self.store.close_sync_log(log)
        if isinstance(exc, ProviderAuthRevoked):
            self.credentials.mark_error(connection, message)
        else:
            self.store.record_sync_outcome(connection.id, None, message)
        return log


def expand_scope(scope: SyncScope, settings: ConnectionSettings) -> list[SyncScope]:
    """Summary: Resolve a requested scope into the sub-scopes to run.

    Importance: A full sync honors the connection's enabled item kinds.
    Alternatives: Always run every sub-scope on a full sync.
    """

    if scope != SyncScope.FULL:
        return [scope]
    scopes: list[SyncScope] = []
    if settings.sync_calendar:
        scopes.append(SyncScope.CALENDAR)
    if settings.sync_email:
        scopes.append(SyncScope.EMAIL)
    if settings.sync_contacts:
        scopes.append(SyncScope.CONTACTS)
    return scopes


def should_auto_archive(settings: ConnectionSettings, email: SyncedEmail) -> bool:
    if not settings.auto_archive_emails:
        return False
    return not settings.archive_client_emails_only or email.is_client_communication


def fingerprint(payload: dict[str, Any]) -> str:
    """Summary: Stable SHA-256 of a provider payload.

    Importance: Stands in for a revision timestamp when the provider has none.
    Alternatives: Compare every mirrored field individually.
    """

    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _parse_scope(scope: SyncScope | str) -> SyncScope:
    if isinstance(scope, SyncScope):
        return scope
    try:
        return SyncScope(str(scope).strip().lower())
    except ValueError as exc:
        raise InvalidRequest(f"Unknown sync scope: {scope}") from exc


def _parse_since(since: datetime | str | None) -> datetime | None:
    try:
        return parse_timestamp(since)
    except ValueError as exc:
        raise InvalidRequest(f"Invalid since timestamp: {since}") from exc


def _later(first: datetime | None, second: datetime | None) -> datetime | None:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, KeyError):
        return f"Missing field {exc}"
    return str(exc) or exc.__class__.__name__
