"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from advisorsync.config import AppConfig
from advisorsync.directory import PersonDirectory, StaticPersonDirectory
from advisorsync.google_workspace import GoogleWorkspaceClient
from advisorsync.microsoft_graph import MicrosoftGraphClient
from advisorsync.models import Connection, Provider
from advisorsync.providers import MockProviderClient, ProviderRegistry
from advisorsync.services import (
    CalendarService,
    CredentialService,
    EmailService,
    LinkingService,
    StatsService,
    SyncLogService,
)
from advisorsync.storage.sqlite_store import SqliteStore
from advisorsync.sync import KeyedLocks, OutboundPusher, SyncEngine, SyncGuard
from advisorsync.token_codec import StateCodec, TokenCodec


logger = logging.getLogger(__name__)

PERSONS_FILE = "persons.json"


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building user services.

    Importance: The sync guard and refresh locks must be shared across every request.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    registry: ProviderRegistry
    config: AppConfig
    codec: TokenCodec
    state_codec: StateCodec
    guard: SyncGuard = field(default_factory=SyncGuard)
    refresh_locks: KeyedLocks = field(default_factory=KeyedLocks)
    directory: PersonDirectory = field(default_factory=StaticPersonDirectory)

    def services_for_user(self, user_id: str) -> "AppServices":
        """Summary: Build user-scoped services from shared context.

        Importance: Every query and write is bound to one user id.
        Alternatives: Use a multi-tenant database with row-level security.
        """

        credentials = CredentialService(
            store=self.store,
            registry=self.registry,
            config=self.config,
            codec=self.codec,
            state_codec=self.state_codec,
            refresh_locks=self.refresh_locks,
            user_id=user_id,
        )
        pusher = OutboundPusher(
            attempts=self.config.push_retry_attempts,
            backoff_seconds=self.config.push_retry_backoff_seconds,
        )
        return AppServices(
            credentials=credentials,
            calendar=CalendarService(
                store=self.store,
                registry=self.registry,
                credentials=credentials,
                pusher=pusher,
                user_id=user_id,
            ),
            email=EmailService(
                store=self.store,
                registry=self.registry,
                credentials=credentials,
                pusher=pusher,
                user_id=user_id,
            ),
            linking=LinkingService(store=self.store, user_id=user_id),
            sync=SyncEngine(
                store=self.store,
                registry=self.registry,
                credentials=credentials,
                config=self.config,
                guard=self.guard,
                user_id=user_id,
                directory=self.directory,
            ),
            logs=SyncLogService(store=self.store, user_id=user_id),
            stats=StatsService(
                store=self.store,
                user_id=user_id,
                upcoming_window_days=self.config.upcoming_window_days,
            ),
            directory=self.directory,
            user_id=user_id,
        )

    def complete_authorization(self, code: str, state: str) -> Connection:
        """Summary: Finish an OAuth callback for whichever user started it.

        Importance: The callback carries no user header, so the signed state names the user.
        Alternatives: Require the user to be logged in on the callback request.
        """

        user_id, _ = self.state_codec.decode(state)
        return self.services_for_user(user_id).credentials.complete_authorization(code, state)


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for one user.

    Importance: Simplifies passing dependencies to UI or API layers.
    Alternatives: Use a dependency injection container.
    """

    credentials: CredentialService
    calendar: CalendarService
    email: EmailService
    linking: LinkingService
    sync: SyncEngine
    logs: SyncLogService
    stats: StatsService
    directory: PersonDirectory
    user_id: str


def build_registry(config: AppConfig) -> ProviderRegistry:
    """Summary: Register a client per provider for the configured mode.

    Importance: Mock mode runs the whole stack offline from fixtures.
    Alternatives: Pick clients per request based on a query flag.
    """

    if config.provider_mode == "live":
        return ProviderRegistry(
            {
                Provider.MICROSOFT: MicrosoftGraphClient(config),
                Provider.GOOGLE: GoogleWorkspaceClient(config),
            }
        )
    if config.provider_mode != "mock":
        logger.warning("Unknown provider mode %s; using mock providers.", config.provider_mode)
    fixture_dir = Path(config.mock_fixture_dir)
    return ProviderRegistry(
        {provider: MockProviderClient.from_fixtures(provider, fixture_dir) for provider in Provider}
    )


def build_context(
    config: AppConfig,
    registry: ProviderRegistry | None = None,
    directory: PersonDirectory | None = None,
) -> AppContext:
    """Summary: Build shared context for user-scoped services.

    Importance: Reuses storage, provider clients, and locks across user sessions.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    if directory is None:
        directory = StaticPersonDirectory.from_file(Path(config.mock_fixture_dir) / PERSONS_FILE)
    return AppContext(
        store=store,
        registry=registry or build_registry(config),
        config=config,
        codec=TokenCodec(config.token_secret),
        state_codec=StateCodec(config.token_secret, config.oauth_state_ttl_seconds),
        directory=directory,
    )
