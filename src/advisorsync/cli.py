"""Summary: Command-line interface for AdvisorSync.

Importance: Provides a local entry point for connecting providers and running syncs.
Alternatives: Drive every workflow through the HTTP API.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime

import uvicorn

from advisorsync.api import create_app
from advisorsync.app import build_context
from advisorsync.config import AppConfig
from advisorsync.models import CalendarFilter, EmailFilter, parse_timestamp


def timestamp_arg(value: str) -> datetime | None:
    """Parse an ISO-8601 option value, reporting bad input as a usage error."""

    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an ISO-8601 timestamp, got {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="AdvisorSync CLI")
    parser.add_argument("--user", type=str, default="local-user", help="User id to act as")
    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser("connect", help="Print the provider consent URL")
    connect.add_argument("provider", type=str)

    complete = subparsers.add_parser("complete", help="Finish an OAuth flow")
    complete.add_argument("code", type=str)
    complete.add_argument("state", type=str)

    subparsers.add_parser("connections", help="List provider connections")

    settings = subparsers.add_parser("settings", help="Update connection settings")
    settings.add_argument("provider", type=str)
    settings.add_argument("values", nargs="+", help="key=value pairs; values are JSON")

    disconnect = subparsers.add_parser("disconnect", help="Revoke a provider connection")
    disconnect.add_argument("provider", type=str)

    sync = subparsers.add_parser("sync", help="Run a sync for one provider")
    sync.add_argument("provider", type=str)
    sync.add_argument("--scope", type=str, default="full")
    sync.add_argument("--since", type=timestamp_arg, default=None)

    logs = subparsers.add_parser("logs", help="List recent sync logs")
    logs.add_argument("--provider", type=str, default=None)
    logs.add_argument("--limit", type=int, default=20)

    events = subparsers.add_parser("events", help="List calendar mirrors")
    events.add_argument("--start", type=timestamp_arg, default=None)
    events.add_argument("--end", type=timestamp_arg, default=None)
    events.add_argument("--include-deleted", action="store_true")

    emails = subparsers.add_parser("emails", help="List email mirrors")
    emails.add_argument("--search", type=str, default=None)
    emails.add_argument("--limit", type=int, default=20)

    threads = subparsers.add_parser("threads", help="List email threads")
    threads.add_argument("--household", type=str, default=None)

    subparsers.add_parser("auto-link", help="Link unlinked mirrors to known persons")
    subparsers.add_parser("stats", help="Show integration statistics")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def run_cli() -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Lets operators exercise the sync engine without a frontend.
    Alternatives: Invoke services via an HTTP API.
    """

    parser = build_parser()
    args = parser.parse_args()
    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        uvicorn.run(
            create_app(config),
            host=args.host or config.api_host,
            port=args.port or config.api_port,
            log_level=config.log_level.lower(),
        )
        return

    services = build_context(config).services_for_user(args.user)

    if args.command == "connect":
        print(services.credentials.begin_authorization(args.provider))
        return

    if args.command == "complete":
        connection = services.credentials.complete_authorization(args.code, args.state)
        print(f"Connected {connection.provider.value} ({connection.external_email or 'unknown account'}).")
        return

    if args.command == "connections":
        for connection in services.credentials.list_connections():
            print(
                f"{connection.provider.value}: {connection.status.value} "
                f"last_sync={connection.last_sync_at} error={connection.last_sync_error or '-'}"
            )
        return

    if args.command == "settings":
        partial = {}
        for item in args.values:
            if "=" not in item:
                parser.error(f"Expected key=value, got {item}")
            key, raw = item.split("=", 1)
            try:
                partial[key] = json.loads(raw)
            except json.JSONDecodeError:
                partial[key] = raw
        connection = services.credentials.update_settings(args.provider, partial)
        for key, value in connection.settings.to_dict().items():
            print(f"{key}: {value}")
        return

    if args.command == "disconnect":
        connection = services.credentials.disconnect(args.provider)
        print(f"{connection.provider.value} is now {connection.status.value}.")
        return

    if args.command == "sync":
        log = services.sync.run_sync(args.provider, args.scope, args.since)
        print(
            f"{log.status.value}: processed={log.items_processed} created={log.items_created} "
            f"updated={log.items_updated} deleted={log.items_deleted} errors={log.errors}"
        )
        for detail in log.error_details:
            print(f"  {detail.item_id or '-'}: {detail.message}")
        return

    if args.command == "logs":
        for log in services.logs.list_logs(args.provider, args.limit):
            print(
                f"{log.id}: {log.provider.value}/{log.sync_type.value} {log.status.value} "
                f"{log.started_at} errors={log.errors}"
            )
        return

    if args.command == "events":
        criteria = CalendarFilter(
            start_date=args.start,
            end_date=args.end,
            include_deleted=args.include_deleted,
        )
        for event in services.calendar.list_events(criteria):
            print(f"{event.id}: {event.subject} ({event.start_time}) [{event.state.value}]")
        return

    if args.command == "emails":
        for email in services.email.list_emails(EmailFilter(search=args.search, limit=args.limit)):
            print(f"{email.id}: {email.subject} ({email.sender.email}) {email.received_at}")
        return

    if args.command == "threads":
        for thread in services.email.list_threads(args.household):
            print(f"{thread.conversation_id}: {thread.subject} ({thread.message_count} messages)")
        return

    if args.command == "auto-link":
        result = services.linking.auto_link(services.directory)
        print(
            f"Linked {result.emails_linked}/{result.emails_scanned} emails and "
            f"{result.events_linked}/{result.events_scanned} events."
        )
        return

    if args.command == "stats":
        snapshot = services.stats.snapshot()
        for key, value in snapshot.items():
            print(f"{key}: {value}")
        return


if __name__ == "__main__":
    run_cli()
