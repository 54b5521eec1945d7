"""Summary: Tests for OAuth consent URLs and token requests.

Importance: Ensures authorization URLs and token forms carry the right fields.
Alternatives: Rely on manual OAuth testing only.
"""

from __future__ import annotations

import urllib.parse
from pathlib import Path

import pytest

from advisorsync import oauth
from advisorsync.errors import AuthenticationFailed
from advisorsync.models import Provider

from conftest import build_config


def test_microsoft_consent_url_includes_state_and_scopes(tmp_path: Path) -> None:
    """Summary: Verify the Microsoft URL carries state, scopes, and tenant.

    Importance: The callback relies on the state round-tripping unchanged.
    Alternatives: Build URLs in the frontend.
    """

    url = oauth.authorization_url(build_config(tmp_path), Provider.MICROSOFT, "state-123")
    parsed = urllib.parse.urlparse(url)
    params = urllib.parse.parse_qs(parsed.query)
    assert parsed.path == "/common/oauth2/v2.0/authorize"
    assert params["state"] == ["state-123"]
    assert params["scope"] == [" ".join(oauth.MICROSOFT_SCOPES)]
    assert params["client_id"] == ["ms-client"]
    assert params["response_mode"] == ["query"]


def test_google_consent_url_requests_offline_access(tmp_path: Path) -> None:
    url = oauth.authorization_url(build_config(tmp_path), Provider.GOOGLE, "state-456")
    assert url.startswith(oauth.GOOGLE_CONSENT_URL)
    params = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]
    assert params["scope"] == [" ".join(oauth.GOOGLE_SCOPES)]


def test_grant_forms_include_provider_specific_fields(tmp_path: Path) -> None:
    config = build_config(tmp_path)
    microsoft = oauth.code_grant_form(oauth.oauth_app(config, Provider.MICROSOFT), "code-1")
    google = oauth.refresh_grant_form(oauth.oauth_app(config, Provider.GOOGLE), "refresh-1")
    assert microsoft["grant_type"] == "authorization_code"
    assert microsoft["code"] == "code-1"
    assert "scope" in microsoft
    assert google["grant_type"] == "refresh_token"
    assert "scope" not in google


def test_grant_form_requires_client_credentials(tmp_path: Path) -> None:
    app = oauth.oauth_app(build_config(tmp_path, google_client_secret=""), Provider.GOOGLE)
    with pytest.raises(AuthenticationFailed):
        oauth.code_grant_form(app, "code-1")


def test_exchange_code_posts_to_the_token_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Summary: The code exchange posts its form to the provider token endpoint.

    Importance: A wrong endpoint or grant type only shows up against a live tenant.
    Alternatives: Exercise the exchange against a sandbox tenant.
    """

    calls: list[tuple[str, dict[str, str]]] = []

    def fake_request(url: str, form: dict[str, str]) -> dict[str, object]:
        calls.append((url, form))
        return {"access_token": "a", "refresh_token": "r", "expires_in": 3600, "scope": "Mail.Send"}

    monkeypatch.setattr(oauth, "_request_tokens", fake_request)
    config = build_config(tmp_path)
    grant = oauth.exchange_code(config, Provider.MICROSOFT, "code-9")

    assert calls[0][0] == config.microsoft_token_url
    assert calls[0][1]["code"] == "code-9"
    assert (grant.access_token, grant.refresh_token, grant.expires_in_seconds) == ("a", "r", 3600)


def test_token_response_is_normalized() -> None:
    grant = oauth.parse_token_response(
        {"access_token": "a", "expires_in": "3600", "scope": "Mail.Read Mail.Send"}
    )
    assert grant.expires_in_seconds == 3600
    assert grant.refresh_token is None
    assert grant.granted_scopes == ["Mail.Read", "Mail.Send"]
    with pytest.raises(AuthenticationFailed):
        oauth.parse_token_response({"token_type": "Bearer"})
