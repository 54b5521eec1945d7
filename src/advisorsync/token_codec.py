"""Summary: Token encoding utilities for OAuth credentials and redirect state.

Importance: Keeps stored tokens obscured and makes the OAuth state tamper-evident.
Alternatives: Use a dedicated secrets manager or a JWT library.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

from advisorsync.errors import AuthenticationFailed
from advisorsync.models import Provider


STATE_VERSION = 1
TOKEN_NONCE_BYTES = 12
TOKEN_TAG_BYTES = 16


class TokenCodec:
    """Summary: Salted, authenticated encoding for OAuth tokens at rest.

    Importance: Stored tokens are unreadable without the deployment secret and tampering is detected.
    Alternatives: AES-GCM via the cryptography package with a managed key.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def encode(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(TOKEN_NONCE_BYTES)
        raw = plaintext.encode("utf-8")
        body = _xor(raw, _keystream(self._secret + nonce, len(raw)))
        return _b64encode(nonce + body + self._tag(nonce + body))

    def decode(self, payload: str) -> str:
        """Summary: Verify and decode a stored token.

        Importance: A rotated secret or edited row surfaces as an auth failure, not garbage tokens.
        Alternatives: Return whatever bytes come out and let the provider reject them.
        """

        try:
            raw = _b64decode(payload)
        except ValueError as exc:
            raise AuthenticationFailed("Stored token is not valid base64") from exc
        if len(raw) < TOKEN_NONCE_BYTES + TOKEN_TAG_BYTES:
            raise AuthenticationFailed("Stored token is truncated")
        signed, tag = raw[:-TOKEN_TAG_BYTES], raw[-TOKEN_TAG_BYTES:]
        if not hmac.compare_digest(self._tag(signed), tag):
            raise AuthenticationFailed("Stored token failed integrity check")
        nonce, body = signed[:TOKEN_NONCE_BYTES], signed[TOKEN_NONCE_BYTES:]
        return _xor(body, _keystream(self._secret + nonce, len(body))).decode("utf-8")

    def _tag(self, data: bytes) -> bytes:
        return hmac.new(self._secret, data, hashlib.sha256).digest()[:TOKEN_TAG_BYTES]


class StateCodec:
    """Summary: Signs and verifies the OAuth state carried across the redirect.

    Importance: Binds the callback to the user and provider that started the flow.
    Alternatives: Keep pending states in server-side session storage.
    """

    def __init__(self, secret: str, ttl_seconds: int = 600) -> None:
        self._secret = secret.encode("utf-8")
        self._ttl_seconds = ttl_seconds

    def encode(self, user_id: str, provider: Provider) -> str:
        """Summary: Build a signed state blob for a user and provider.

        Importance: The callback needs no server-side lookup to know who is connecting.
        Alternatives: Use an opaque random token mapped in a database table.
        """

        payload = {
            "v": STATE_VERSION,
            "user_id": user_id,
            "provider": provider.value,
            "iat": int(time.time()),
            "nonce": secrets.token_urlsafe(8),
        }
        payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def decode(self, state: str) -> tuple[str, Provider]:
        """Summary: Verify a state blob and return its user id and provider.

        Importance: Rejects forged, expired, or truncated state values.
        Alternatives: Trust the provider query parameter on the callback.
        """

        if not state or "." not in state:
            raise AuthenticationFailed("Malformed OAuth state")
        payload_b64, signature = state.split(".", 1)
        if not hmac.compare_digest(self._sign(payload_b64), signature):
            raise AuthenticationFailed("OAuth state signature mismatch")
        try:
            payload: dict[str, Any] = json.loads(_b64decode(payload_b64))
        except ValueError as exc:
            raise AuthenticationFailed("OAuth state payload unreadable") from exc
        if payload.get("v") != STATE_VERSION:
            raise AuthenticationFailed("OAuth state version mismatch")
        issued_at = payload.get("iat")
        if not isinstance(issued_at, int) or time.time() - issued_at > self._ttl_seconds:
            raise AuthenticationFailed("OAuth state expired")
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationFailed("OAuth state missing user")
        return user_id, Provider.parse(payload.get("provider", ""))

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._secret, payload_b64.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _keystream(seed: bytes, length: int) -> bytes:
    # SHA-256 in counter mode over secret plus nonce.
    blocks = (length + 31) // 32
    stream = b"".join(hashlib.sha256(seed + index.to_bytes(4, "big")).digest() for index in range(blocks))
    return stream[:length]


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes(left ^ right for left, right in zip(data, key))
