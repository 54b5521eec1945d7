"""Summary: Shared fixtures for AdvisorSync tests.

Importance: Gives every test isolated storage and deterministic mock providers.
Alternatives: Build configuration and services inline in each test module.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Callable

import pytest

from advisorsync.app import AppContext, AppServices, build_context
from advisorsync.config import AppConfig
from advisorsync.directory import StaticPersonDirectory
from advisorsync.models import Connection, PersonRecord, Provider
from advisorsync.providers import MockProviderClient, ProviderRegistry


USER_ID = "advisor-1"


def build_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Summary: Build an AppConfig for tests.

    Importance: Ensures tests use isolated storage and no real provider credentials.
    Alternatives: Load AppConfig from environment variables.
    """

    config = AppConfig(
        db_path=str(tmp_path / "advisorsync.db"),
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        token_secret="secret",
        oauth_state_ttl_seconds=600,
        oauth_redirect_uri="http://localhost:8000/integrations/oauth/callback",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        microsoft_tenant_id="common",
        microsoft_auth_base_url="https://login.microsoftonline.com",
        microsoft_graph_base_url="https://graph.example/v1.0",
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_token_url="https://oauth2.example/token",
        google_calendar_base_url="https://calendar.example/v3",
        google_gmail_base_url="https://gmail.example/v1",
        provider_mode="mock",
        mock_fixture_dir=str(tmp_path),
        sync_workers=4,
        push_retry_attempts=3,
        push_retry_backoff_seconds=0.0,
        token_refresh_margin_seconds=300,
        upcoming_window_days=30,
        log_level="WARNING",
    )
    return replace(config, **overrides)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(tmp_path)


@pytest.fixture
def microsoft() -> MockProviderClient:
    return MockProviderClient(Provider.MICROSOFT)


@pytest.fixture
def google() -> MockProviderClient:
    return MockProviderClient(Provider.GOOGLE)


@pytest.fixture
def directory() -> StaticPersonDirectory:
    return StaticPersonDirectory(
        [
            PersonRecord(
                person_id="person-dana", email="Dana.Parker@example.org", household_id="household-parker"
            ),
            PersonRecord(person_id="person-lee", email="lee.nguyen@example.org", household_id=None),
        ]
    )


@pytest.fixture
def context(
    config: AppConfig,
    microsoft: MockProviderClient,
    google: MockProviderClient,
    directory: StaticPersonDirectory,
) -> AppContext:
    registry = ProviderRegistry({Provider.MICROSOFT: microsoft, Provider.GOOGLE: google})
    return build_context(config, registry=registry, directory=directory)


@pytest.fixture
def services(context: AppContext) -> AppServices:
    return context.services_for_user(USER_ID)


@pytest.fixture
def connect(context: AppContext) -> Callable[..., Connection]:
    """Summary: Return a helper that completes OAuth for a user and provider.

    Importance: Most tests need an ACTIVE connection before anything else.
    Alternatives: Insert connection rows directly through the store.
    """

    def _connect(provider: Provider = Provider.MICROSOFT, user_id: str = USER_ID) -> Connection:
        state = context.state_codec.encode(user_id, provider)
        return context.services_for_user(user_id).credentials.complete_authorization("code", state)

    return _connect
