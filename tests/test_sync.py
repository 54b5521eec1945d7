"""Summary: Tests for the sync reconciliation engine.

Importance: Ensures runs are idempotent, isolate item failures, and audit every attempt.
Alternatives: Validate sync behavior manually against a sandbox mailbox.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from advisorsync.errors import (
    IntegrationNotActive,
    InvalidRequest,
    ProviderAuthRevoked,
    ProviderCatastrophicError,
    SyncAlreadyInProgress,
)
from advisorsync.models import (
    CalendarFilter,
    ConnectionStatus,
    EmailFilter,
    EventState,
    Provider,
    SyncScope,
    SyncStatus,
    utcnow,
)

from conftest import USER_ID


def _event(external_id: str, subject: str = "Portfolio review", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": external_id,
        "subject": subject,
        "start": "2026-11-03T15:00:00Z",
        "end": "2026-11-03T16:00:00Z",
        "attendees": [{"email": "dana.parker@example.org", "name": "Dana Parker"}],
    }
    payload.update(extra)
    return payload


def _email(external_id: str, sender: str = "dana.parker@example.org", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": external_id,
        "conversation_id": "conv-1",
        "subject": "Roth conversion",
        "body": "Can we talk about the conversion?",
        "from": {"email": sender},
        "to": [{"email": "advisor@example.com"}],
        "received_at": "2026-10-14T13:05:00Z",
        "folder": "Inbox",
    }
    payload.update(extra)
    return payload


def test_full_sync_creates_mirrors_and_completes_log(services, connect, microsoft) -> None:
    """Summary: A first full sync mirrors every item and closes its log.

    Importance: Establishes the baseline counters every other test relies on.
    Alternatives: Check only the mirrors and ignore the log.
    """

    connect()
    microsoft.events = [_event("evt-1"), _event("evt-2", subject="Estate planning")]
    microsoft.emails = [_email("msg-1"), _email("msg-2", received_at="2026-10-14T15:00:00Z")]

    log = services.sync.run_sync("microsoft")

    assert log.status == SyncStatus.COMPLETED
    assert log.sync_type == SyncScope.FULL
    assert (log.items_processed, log.items_created, log.items_updated, log.errors) == (4, 4, 0, 0)
    assert log.completed_at is not None
    assert services.logs.get_log(log.id) == log
    assert len(services.calendar.list_events()) == 2
    assert len(services.email.list_emails()) == 2
    assert services.credentials.get_connection("microsoft").last_sync_at == log.started_at


def test_resync_without_changes_is_idempotent(services, connect, microsoft) -> None:
    connect()
    microsoft.events = [_event("evt-1"), _event("evt-2")]
    microsoft.emails = [_email("msg-1")]
    services.sync.run_sync("microsoft")
    before = services.calendar.list_events()

    second = services.sync.run_sync("microsoft")

    assert second.status == SyncStatus.COMPLETED
    assert second.items_processed == 3
    assert (second.items_created, second.items_updated, second.errors) == (0, 0, 0)
    assert services.calendar.list_events() == before


def test_duplicate_external_id_keeps_newest_revision(services, connect, microsoft) -> None:
    """Summary: Two revisions of one item in a batch leave the newer content.

    Importance: Parallel workers must not let an older revision overwrite a newer one.
    Alternatives: Deduplicate the batch before reconciling.
    """

    connect()
    microsoft.events = [
        _event("evt-1", subject="Newer", modified_at="2026-10-15T10:00:00Z"),
        _event("evt-1", subject="Older", modified_at="2026-10-15T09:00:00Z"),
    ]

    log = services.sync.run_sync("microsoft", "calendar")

    events = services.calendar.list_events()
    assert [event.subject for event in events] == ["Newer"]
    assert log.items_processed == 2
    assert log.items_created == 1
    assert log.errors == 0


def test_malformed_item_fails_alone(services, connect, microsoft) -> None:
    """Summary: One bad item is recorded while the rest of the batch syncs.

    Importance: A single broken payload must not block a user's whole calendar.
    Alternatives: Abort the run on the first error.
    """

    connect()
    microsoft.events = [_event(f"evt-{number}") for number in range(1, 11)]
    del microsoft.events[4]["start"]

    log = services.sync.run_sync("microsoft", "calendar")

    assert log.status == SyncStatus.COMPLETED
    assert log.items_processed == 10
    assert log.items_created == 9
    assert log.errors == 1
    assert log.error_details[0].item_id == "evt-5"
    assert "start" in log.error_details[0].message
    assert services.calendar.store.get_calendar_event_by_external_id(USER_ID, "evt-5") is None


def test_inverted_event_times_are_item_errors(services, connect, microsoft) -> None:
    connect()
    microsoft.events = [_event("evt-1", start="2026-11-03T16:00:00Z", end="2026-11-03T15:00:00Z")]
    log = services.sync.run_sync("microsoft", "calendar")
    assert log.errors == 1
    assert log.items_created == 0


def test_sync_requires_active_connection(services, connect) -> None:
    connect()
    services.credentials.disconnect("microsoft")
    with pytest.raises(IntegrationNotActive):
        services.sync.run_sync("microsoft")
    assert services.logs.list_logs() == []


def test_overlapping_sync_is_rejected_per_provider(context, services, connect, google) -> None:
    """Summary: A second run for the same user and provider is refused.

    Importance: Overlapping runs would race on the same mirrors and counters.
    Alternatives: Queue the second run behind the first.
    """

    connect()
    connect(Provider.GOOGLE)
    google.events = [_event("g-1")]
    with context.guard.hold(USER_ID, Provider.MICROSOFT):
        with pytest.raises(SyncAlreadyInProgress):
            services.sync.run_sync("microsoft")
        other = services.sync.run_sync("google")
    assert other.status == SyncStatus.COMPLETED
    assert [log.provider for log in services.logs.list_logs()] == [Provider.GOOGLE]
    assert not context.guard.is_running(USER_ID, Provider.MICROSOFT)


def test_remote_deletion_soft_deletes_mirror(services, connect, microsoft) -> None:
    connect()
    microsoft.events = [_event("evt-1"), _event("evt-2")]
    services.sync.run_sync("microsoft", "calendar")
    microsoft.events[0]["deleted"] = True

    log = services.sync.run_sync("microsoft", "calendar")

    assert log.items_deleted == 1
    assert [event.external_id for event in services.calendar.list_events()] == ["evt-2"]
    deleted = services.calendar.list_events(CalendarFilter(include_deleted=True))
    assert {event.external_id: event.state for event in deleted}["evt-1"] == EventState.DELETED


def test_remote_update_preserves_crm_annotations(services, connect, microsoft) -> None:
    """Summary: Provider edits refresh content but keep links and notes.

    Importance: Advisors should never lose CRM context because a client edited an email.
    Alternatives: Store annotations in a separate table.
    """

    connect()
    microsoft.emails = [_email("msg-1")]
    services.sync.run_sync("microsoft", "email")
    email = services.email.list_emails()[0]
    services.linking.link_email(email.id, household_id="household-1", notes="Follow up in Q1")
    microsoft.emails[0]["subject"] = "Roth conversion (updated)"

    log = services.sync.run_sync("microsoft", "email")

    refreshed = services.email.get_email(email.id)
    assert log.items_updated == 1
    assert refreshed.subject == "Roth conversion (updated)"
    assert refreshed.linked_household_id == "household-1"
    assert refreshed.internal_notes == "Follow up in Q1"


def test_scope_selection_honors_settings(services, connect, microsoft) -> None:
    connect()
    microsoft.events = [_event("evt-1")]
    microsoft.emails = [_email("msg-1")]
    services.credentials.update_settings("microsoft", {"sync_email": False})

    full = services.sync.run_sync("microsoft")
    assert full.items_processed == 1
    assert services.email.list_emails() == []

    explicit = services.sync.run_sync("microsoft", "email")
    assert explicit.items_created == 1

    with pytest.raises(InvalidRequest):
        services.sync.run_sync("microsoft", "everything")


def test_outbound_only_connection_skips_inbound_fetch(services, connect, microsoft) -> None:
    connect()
    microsoft.events = [_event("evt-1")]
    services.credentials.update_settings("microsoft", {"sync_direction": "outbound"})
    log = services.sync.run_sync("microsoft")
    assert log.status == SyncStatus.COMPLETED
    assert log.items_processed == 0


def test_outbound_only_run_keeps_the_inbound_backlog(services, connect, microsoft) -> None:
    """Summary: Switching an outbound-only connection to bidirectional mirrors older mail.

    Importance: A run that never fetched a scope must not move that scope's cursor.
    Alternatives: Force a full backfill whenever the direction changes.
    """

    connect()
    microsoft.emails = [_email("msg-1", modified_at="2026-10-14T13:05:00Z")]
    services.credentials.update_settings("microsoft", {"sync_direction": "outbound"})
    first = services.sync.run_sync("microsoft")
    services.credentials.update_settings("microsoft", {"sync_direction": "bidirectional"})

    second = services.sync.run_sync("microsoft")

    assert first.items_processed == 0
    assert second.items_created == 1
    assert [email.external_id for email in services.email.list_emails()] == ["msg-1"]


def test_scope_cursors_advance_independently(services, connect, microsoft) -> None:
    """Summary: A calendar run leaves the email cursor where it was.

    Importance: Each scope's window starts at its own last fetch.
    Alternatives: Keep one cursor per connection.
    """

    connect()
    microsoft.events = [_event("evt-1", modified_at="2026-10-14T09:00:00Z")]
    microsoft.emails = [_email("msg-1", modified_at="2026-10-14T13:05:00Z")]

    calendar = services.sync.run_sync("microsoft", "calendar")
    connection = services.credentials.get_connection("microsoft")
    assert (connection.calendar_synced_at, connection.email_synced_at) == (calendar.started_at, None)

    email = services.sync.run_sync("microsoft", "email")

    assert email.items_created == 1
    assert len(services.email.list_emails()) == 1
    connection = services.credentials.get_connection("microsoft")
    assert connection.calendar_synced_at == calendar.started_at
    assert connection.email_synced_at == email.started_at
    assert connection.last_sync_at == email.started_at


def test_disabled_email_scope_is_fetched_once_enabled(services, connect, microsoft) -> None:
    connect()
    microsoft.emails = [_email("msg-1", modified_at="2026-10-14T13:05:00Z")]
    services.credentials.update_settings("microsoft", {"sync_email": False})
    services.sync.run_sync("microsoft")
    services.credentials.update_settings("microsoft", {"sync_email": True})

    log = services.sync.run_sync("microsoft")

    assert log.items_created == 1


def test_unparseable_since_is_an_invalid_request(services, connect, microsoft) -> None:
    connect()
    with pytest.raises(InvalidRequest):
        services.sync.run_sync("microsoft", "email", since="yesterday")
    assert services.logs.list_logs() == []


def test_auto_archive_and_auto_link_on_arrival(services, connect, microsoft) -> None:
    """Summary: Arriving client emails are linked and archived per settings.

    Importance: Keeps the CRM inbox focused on unhandled mail.
    Alternatives: Run linking and archiving as separate manual steps.
    """

    connect()
    services.credentials.update_settings(
        "microsoft", {"auto_link_entities": True, "auto_archive_emails": True}
    )
    microsoft.emails = [
        _email("msg-client"),
        _email("msg-vendor", sender="notices@custodian.example", conversation_id="conv-2"),
    ]
    microsoft.events = [_event("evt-1")]

    services.sync.run_sync("microsoft")

    client = services.calendar.store.get_email_by_external_id(USER_ID, "msg-client")
    vendor = services.calendar.store.get_email_by_external_id(USER_ID, "msg-vendor")
    assert client.linked_person_id == "person-dana"
    assert client.linked_household_id == "household-parker"
    assert client.is_client_communication is True
    assert client.is_archived is True
    assert vendor.linked_person_id is None
    assert vendor.is_archived is False
    event = services.calendar.list_events()[0]
    assert event.linked_person_id == "person-dana"
    thread = services.email.list_threads(household_id="household-parker")
    assert [item.conversation_id for item in thread] == ["conv-1"]


def test_archive_all_when_not_limited_to_clients(services, connect, microsoft) -> None:
    connect()
    services.credentials.update_settings(
        "microsoft", {"auto_archive_emails": True, "archive_client_emails_only": False}
    )
    microsoft.emails = [_email("msg-1", sender="notices@custodian.example")]
    services.sync.run_sync("microsoft", "email")
    assert services.email.list_emails(EmailFilter(is_archived=True))[0].external_id == "msg-1"


def test_revoked_credentials_fail_the_run(services, connect, microsoft, monkeypatch) -> None:
    def _revoked(connection, since):
        raise ProviderAuthRevoked("GET /me/events failed with 401")

    connect()
    monkeypatch.setattr(microsoft, "fetch_changed_calendar_events", _revoked)

    log = services.sync.run_sync("microsoft")

    assert log.status == SyncStatus.FAILED
    assert log.errors == 1
    assert "401" in log.error_details[0].message
    connection = services.credentials.get_connection("microsoft")
    assert connection.status == ConnectionStatus.ERROR
    assert connection.last_sync_at is None
    assert services.logs.get_log(log.id).status == SyncStatus.FAILED


def test_provider_outage_records_error_but_keeps_connection(services, connect, microsoft, monkeypatch) -> None:
    def _outage(connection, since):
        raise ProviderCatastrophicError("GET /me/messages unreachable")

    connect()
    microsoft.events = [_event("evt-1")]
    monkeypatch.setattr(microsoft, "fetch_changed_emails", _outage)

    log = services.sync.run_sync("microsoft")

    assert log.status == SyncStatus.FAILED
    assert log.items_created == 1
    connection = services.credentials.get_connection("microsoft")
    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.last_sync_error == "GET /me/messages unreachable"
    assert len(services.calendar.list_events()) == 1


def test_expired_credentials_without_refresh_fail_the_run(context, services, connect) -> None:
    connection = connect()
    context.store.update_connection_tokens(
        connection.id, context.codec.encode("old"), None, utcnow() - timedelta(hours=1), [], utcnow()
    )
    log = services.sync.run_sync("microsoft")
    assert log.status == SyncStatus.FAILED
    assert services.credentials.get_connection("microsoft").status == ConnectionStatus.EXPIRED


def test_threads_aggregate_conversation_members(services, connect, microsoft) -> None:
    connect()
    microsoft.emails = [
        _email("msg-1", is_read=True),
        _email(
            "msg-2",
            sender="advisor@example.com",
            subject="RE: Roth conversion",
            to=[{"email": "Dana.Parker@example.org"}],
            received_at="2026-10-15T09:00:00Z",
        ),
    ]
    services.sync.run_sync("microsoft", "email")

    threads = services.email.list_threads()
    assert len(threads) == 1
    thread = threads[0]
    assert thread.message_count == 2
    assert thread.subject == "RE: Roth conversion"
    assert thread.has_unread is True
    assert sorted(item.email.lower() for item in thread.participants) == [
        "advisor@example.com",
        "dana.parker@example.org",
    ]
    members = services.email.get_thread("conv-1")
    assert [item.external_id for item in members] == ["msg-1", "msg-2"]
