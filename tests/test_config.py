"""Summary: Tests for configuration loading.

Importance: Ensures defaults load and environment overrides apply.
Alternatives: Validate configuration manually at startup.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from advisorsync.config import AppConfig, load_defaults


DEFAULTS_PATH = Path(__file__).resolve().parents[1] / "config" / "defaults.json"


def test_config_loads_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: Verify defaults populate every field.

    Importance: A fresh checkout must run without any environment setup.
    Alternatives: Require a .env file.
    """

    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ADVISORSYNC_SYNC_WORKERS", raising=False)
    monkeypatch.delenv("ADVISORSYNC_PROVIDER_MODE", raising=False)
    config = AppConfig.from_env(DEFAULTS_PATH)
    assert config.provider_mode == "mock"
    assert config.sync_workers == 4
    assert config.push_retry_backoff_seconds == 0.5
    assert config.microsoft_token_url == "https://login.microsoftonline.com/common/oauth2/v2.0/token"


def test_config_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ADVISORSYNC_SYNC_WORKERS", "8")
    monkeypatch.setenv("MICROSOFT_TENANT_ID", "contoso")
    config = AppConfig.from_env(DEFAULTS_PATH)
    assert config.sync_workers == 8
    assert config.microsoft_token_url.endswith("/contoso/oauth2/v2.0/token")


def test_config_reads_dotenv_without_overriding_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ADVISORSYNC_API_PORT", "9100")
    # setenv first so teardown removes the value .env loads
    monkeypatch.setenv("ADVISORSYNC_LOG_LEVEL", "INFO")
    monkeypatch.delenv("ADVISORSYNC_LOG_LEVEL")
    (tmp_path / ".env").write_text(
        "# local overrides\nADVISORSYNC_API_PORT=9200\nADVISORSYNC_LOG_LEVEL=DEBUG\n", encoding="utf-8"
    )
    config = AppConfig.from_env(DEFAULTS_PATH)
    assert config.api_port == 9100
    assert config.log_level == "DEBUG"


def test_missing_defaults_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_defaults(tmp_path / "missing.json")
