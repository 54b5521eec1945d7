"""Summary: OAuth 2.0 authorization-code plumbing for Microsoft and Google.

Importance: Builds consent URLs and talks to token endpoints for connection setup and refresh.
Alternatives: Depend on MSAL and google-auth for each provider.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from advisorsync.config import AppConfig
from advisorsync.errors import AuthenticationFailed, UnsupportedProvider
from advisorsync.models import Provider, TokenGrant


logger = logging.getLogger(__name__)

MICROSOFT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "Calendars.ReadWrite",
    "Mail.ReadWrite",
    "Mail.Send",
    "Contacts.Read",
]
GOOGLE_SCOPES = [
    "openid",
    "email",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
]
GOOGLE_CONSENT_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class OAuthApp:
    """Summary: One provider's registered OAuth application.

    Importance: Keeps client credentials, endpoints and scopes together so flows stay provider-neutral.
    Alternatives: Branch on the provider inside every OAuth helper.
    """

    provider: Provider
    client_id: str
    client_secret: str
    consent_url: str
    token_url: str
    scopes: tuple[str, ...]
    redirect_uri: str

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise AuthenticationFailed(f"Missing OAuth client credentials for {self.provider.value}")


def oauth_app(config: AppConfig, provider: Provider) -> OAuthApp:
    if provider == Provider.MICROSOFT:
        return OAuthApp(
            provider=provider,
            client_id=config.microsoft_client_id,
            client_secret=config.microsoft_client_secret,
            consent_url=(
                f"{config.microsoft_auth_base_url}/{config.microsoft_tenant_id}/oauth2/v2.0/authorize"
            ),
            token_url=config.microsoft_token_url,
            scopes=tuple(MICROSOFT_SCOPES),
            redirect_uri=config.oauth_redirect_uri,
        )
    if provider == Provider.GOOGLE:
        return OAuthApp(
            provider=provider,
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            consent_url=GOOGLE_CONSENT_URL,
            token_url=config.google_token_url,
            scopes=tuple(GOOGLE_SCOPES),
            redirect_uri=config.oauth_redirect_uri,
        )
    raise UnsupportedProvider(f"Provider {provider} has no OAuth application")


def authorization_url(config: AppConfig, provider: Provider, state: str) -> str:
    """Summary: Build the consent URL the user is redirected to.

    Importance: The signed state travels through the provider and back to the callback untouched.
    Alternatives: Keep pending flows in a server-side session table.
    """

    app = oauth_app(config, provider)
    params = {
        "client_id": app.client_id,
        "response_type": "code",
        "redirect_uri": app.redirect_uri,
        "scope": app.scope,
        "state": state,
    }
    if provider == Provider.MICROSOFT:
        params["response_mode"] = "query"
    else:
        # Google only issues a refresh token with offline access and forced consent.
        params["access_type"] = "offline"
        params["prompt"] = "consent"
    return f"{app.consent_url}?{urllib.parse.urlencode(params)}"


def code_grant_form(app: OAuthApp, code: str) -> dict[str, str]:
    app.require_credentials()
    form = {
        "client_id": app.client_id,
        "client_secret": app.client_secret,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": app.redirect_uri,
    }
    if app.provider == Provider.MICROSOFT:
        form["scope"] = app.scope
    return form


def refresh_grant_form(app: OAuthApp, refresh_token: str) -> dict[str, str]:
    app.require_credentials()
    form = {
        "client_id": app.client_id,
        "client_secret": app.client_secret,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    if app.provider == Provider.MICROSOFT:
        form["scope"] = app.scope
    return form


def exchange_code(config: AppConfig, provider: Provider, code: str) -> TokenGrant:
    """Summary: Trade an authorization code for a token grant.

    Importance: Final step of the consent round-trip.
    Alternatives: Let the frontend call the token endpoint directly.
    """

    app = oauth_app(config, provider)
    return parse_token_response(_request_tokens(app.token_url, code_grant_form(app, code)))


def refresh_grant(config: AppConfig, provider: Provider, refresh_token: str) -> TokenGrant:
    app = oauth_app(config, provider)
    return parse_token_response(_request_tokens(app.token_url, refresh_grant_form(app, refresh_token)))


def parse_token_response(payload: dict[str, Any]) -> TokenGrant:
    """Summary: Normalize a token endpoint response into a TokenGrant.

    Importance: Expiry arrives as an int or a string depending on the provider.
    Alternatives: Store the raw JSON and interpret it at refresh time.
    """

    access_token = payload.get("access_token")
    if not access_token:
        raise AuthenticationFailed("Token response missing access_token")
    expires_in = payload.get("expires_in")
    return TokenGrant(
        access_token=access_token,
        refresh_token=payload.get("refresh_token"),
        expires_in_seconds=int(expires_in) if expires_in is not None else None,
        granted_scopes=(payload.get("scope") or "").split(),
    )


def _request_tokens(url: str, form: dict[str, str]) -> dict[str, Any]:
    request = urllib.request.Request(
        url,
        data=urllib.parse.urlencode(form).encode("utf-8"),
        headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=TOKEN_TIMEOUT_SECONDS) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        logger.warning("Token endpoint %s answered HTTP %s.", url, exc.code)
        raise AuthenticationFailed(f"Token request rejected: {detail or exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise AuthenticationFailed(f"Token endpoint unreachable: {exc.reason}") from exc
    try:
        return json.loads(body)
    except ValueError as exc:
        raise AuthenticationFailed("Token endpoint returned invalid JSON") from exc
