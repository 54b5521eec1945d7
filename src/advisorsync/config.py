"""Summary: Application configuration for AdvisorSync.

Importance: Provider credentials, storage and sync tuning all come from one frozen object.
Alternatives: Read os.environ ad hoc wherever a value is needed.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Settings for OAuth apps, provider endpoints, storage and the sync engine.

    Importance: Passed explicitly into every service instead of living in module globals.
    Alternatives: A pydantic-settings model with env prefixes.
    """

    db_path: str
    api_host: str
    api_port: int
    api_key: str
    token_secret: str
    oauth_state_ttl_seconds: int
    oauth_redirect_uri: str
    microsoft_client_id: str
    microsoft_client_secret: str
    microsoft_tenant_id: str
    microsoft_auth_base_url: str
    microsoft_graph_base_url: str
    google_client_id: str
    google_client_secret: str
    google_token_url: str
    google_calendar_base_url: str
    google_gmail_base_url: str
    provider_mode: str
    mock_fixture_dir: str
    sync_workers: int
    push_retry_attempts: int
    push_retry_backoff_seconds: float
    token_refresh_margin_seconds: int
    upcoming_window_days: int
    log_level: str

    @property
    def microsoft_token_url(self) -> str:
        return f"{self.microsoft_auth_base_url}/{self.microsoft_tenant_id}/oauth2/v2.0/token"

    @staticmethod
    def from_env(defaults_path: Path | None = None) -> "AppConfig":
        """Summary: Resolve settings from defaults.json, then .env, then the process environment.

        Importance: Every key has a default, so a fresh checkout runs in mock mode.
        Alternatives: Fail fast on any missing variable.
        """

        defaults = load_defaults(defaults_path or Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("ADVISORSYNC_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("ADVISORSYNC_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("ADVISORSYNC_API_PORT", defaults["api_port"])),
            api_key=os.getenv("ADVISORSYNC_API_KEY", defaults["api_key"]),
            token_secret=os.getenv("ADVISORSYNC_TOKEN_SECRET", defaults["token_secret"]),
            oauth_state_ttl_seconds=int(
                os.getenv("ADVISORSYNC_OAUTH_STATE_TTL_SECONDS", defaults["oauth_state_ttl_seconds"])
            ),
            oauth_redirect_uri=os.getenv(
                "ADVISORSYNC_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", defaults["microsoft_client_id"]),
            microsoft_client_secret=os.getenv(
                "MICROSOFT_CLIENT_SECRET", defaults["microsoft_client_secret"]
            ),
            microsoft_tenant_id=os.getenv("MICROSOFT_TENANT_ID", defaults["microsoft_tenant_id"]),
            microsoft_auth_base_url=os.getenv(
                "MICROSOFT_AUTH_BASE_URL", defaults["microsoft_auth_base_url"]
            ),
            microsoft_graph_base_url=os.getenv(
                "MICROSOFT_GRAPH_BASE_URL", defaults["microsoft_graph_base_url"]
            ),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            google_calendar_base_url=os.getenv(
                "GOOGLE_CALENDAR_BASE_URL", defaults["google_calendar_base_url"]
            ),
            google_gmail_base_url=os.getenv("GOOGLE_GMAIL_BASE_URL", defaults["google_gmail_base_url"]),
            provider_mode=os.getenv("ADVISORSYNC_PROVIDER_MODE", defaults["provider_mode"]),
            mock_fixture_dir=os.getenv("ADVISORSYNC_MOCK_FIXTURE_DIR", defaults["mock_fixture_dir"]),
            sync_workers=int(os.getenv("ADVISORSYNC_SYNC_WORKERS", defaults["sync_workers"])),
            push_retry_attempts=int(
                os.getenv("ADVISORSYNC_PUSH_RETRY_ATTEMPTS", defaults["push_retry_attempts"])
            ),
            push_retry_backoff_seconds=float(
                os.getenv(
                    "ADVISORSYNC_PUSH_RETRY_BACKOFF_SECONDS", defaults["push_retry_backoff_seconds"]
                )
            ),
            token_refresh_margin_seconds=int(
                os.getenv(
                    "ADVISORSYNC_TOKEN_REFRESH_MARGIN_SECONDS",
                    defaults["token_refresh_margin_seconds"],
                )
            ),
            upcoming_window_days=int(
                os.getenv("ADVISORSYNC_UPCOMING_WINDOW_DAYS", defaults["upcoming_window_days"])
            ),
            log_level=os.getenv("ADVISORSYNC_LOG_LEVEL", defaults["log_level"]),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Read the JSON defaults document.

    Importance: Documents every supported key in one place.
    Alternatives: Hard-code defaults next to each field.
    """

    if not path.exists():
        raise FileNotFoundError(f"Missing configuration defaults at {path}")
    with path.open(encoding="utf-8") as handle:
        return {key: str(value) for key, value in json.load(handle).items()}


def load_dotenv(path: Path) -> None:
    """Summary: Export KEY=VALUE lines from a .env file without overriding real variables.

    Importance: Client secrets stay out of defaults.json during local development.
    Alternatives: Require operators to export variables by hand.
    """

    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if entry.startswith("export "):
            entry = entry[len("export "):]
        name, sep, value = entry.partition("=")
        if not sep or entry.startswith("#"):
            continue
        os.environ.setdefault(name.strip(), value.strip().strip("\"'"))
