"""
tests/conftest.py -- Shared test fixtures for pakreq.

This module provides:
  - store / passwords / pool: isolated credential store and crypto engine
  - alice: an account with a known password
  - fake_provider: an in-process identity provider (key set + token
    endpoint) served through httpx.MockTransport, signing with a real RSA key
  - client: TestClient over the full app (REST + web) with follow_redirects=False

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because route handlers run store calls in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each test gets its own name so no state leaks between tests.

The DEBUG env var must be set before any core.config import so Settings()
can auto-generate secrets in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import base64
import os
import time
import uuid
from collections.abc import Generator
from typing import Any, Optional

# CRITICAL: Set DEBUG before any core import.
os.environ.setdefault("DEBUG", "true")

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwt

from api.limiter import limiter
from api.main import create_app
from auth.models import User
from auth.passwords import PasswordEngine
from auth.store import CredentialStore
from auth.workers import CryptoPool
from core.config import Settings
from web.routes import router as web_router

CLIENT_ID = "pakreq-test"
CLIENT_SECRET = "pakreq-test-client-secret"
ISSUER = "https://id.example.test"
KEYS_URL = f"{ISSUER}/keys"
TOKEN_URL = f"{ISSUER}/token"
AUTHORIZE_URL = f"{ISSUER}/auth"

ALICE_PASSWORD = "correct horse battery staple"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def pack_subject(identifier: str, tag: int = 0x0A, trailer: bytes = b"") -> str:
    """Build a provider subject claim: base64(tag, len, identifier, trailer), unpadded."""
    body = identifier.encode("utf-8")
    raw = bytes([tag, len(body)]) + body + trailer
    return base64.b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _memory_url() -> str:
    return f"sqlite:///file:pakreq_test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# RSA signing keys
# ---------------------------------------------------------------------------


class SigningKey:
    """An RSA key pair with its public JWK form."""

    def __init__(self, kid: str) -> None:
        self.kid = kid
        private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = private.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")
        numbers = private.public_key().public_numbers()
        self.jwk = {
            "kty": "RSA",
            "use": "sig",
            "alg": "RS256",
            "kid": kid,
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }

    def sign(self, claims: dict[str, Any], headers: Optional[dict[str, Any]] = None) -> str:
        hdrs = {"kid": self.kid} if headers is None else headers
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers=hdrs)


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey("k1")


@pytest.fixture(scope="session")
def other_signing_key() -> SigningKey:
    return SigningKey("k2")


def identity_claims(subject: str = "alice-aosc", **overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "sub": pack_subject(subject),
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + 600,
        "email": f"{subject}@example.test",
        "email_verified": True,
        "name": subject,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """Serve the key set and token endpoint for httpx.MockTransport.

    Attributes are plain knobs a test flips before making requests:
      keys            -- JWKs published at KEYS_URL
      id_token        -- returned by the token endpoint (None omits it)
      token_status    -- HTTP status of the token endpoint
      keys_status     -- HTTP status of the key set endpoint
      token_error     -- raised instead of answering the token endpoint
      keys_error      -- raised instead of answering the key set endpoint
    """

    def __init__(self, signing_key: SigningKey) -> None:
        self.signing_key = signing_key
        self.keys: list[dict] = [signing_key.jwk]
        self.id_token: Optional[str] = signing_key.sign(identity_claims())
        self.token_status = 200
        self.keys_status = 200
        self.token_error: Optional[Exception] = None
        self.keys_error: Optional[Exception] = None
        self.key_fetches = 0
        self.token_requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == KEYS_URL:
            self.key_fetches += 1
            if self.keys_error is not None:
                raise self.keys_error
            if self.keys_status != 200:
                return httpx.Response(self.keys_status, text="unavailable")
            return httpx.Response(200, json={"keys": self.keys})
        if url == TOKEN_URL:
            self.token_requests.append(request)
            if self.token_error is not None:
                raise self.token_error
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            body: dict[str, Any] = {"access_token": "provider-access-token", "token_type": "Bearer"}
            if self.id_token is not None:
                body["id_token"] = self.id_token
            return httpx.Response(200, json=body)
        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def fake_provider(signing_key: SigningKey) -> FakeProvider:
    return FakeProvider(signing_key)


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """The limiter is process-wide; give every test a clean counter store."""
    limiter.reset()


@pytest.fixture()
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore(db_url=_memory_url())
    yield s
    s.close()


@pytest.fixture()
def pool() -> Generator[CryptoPool, None, None]:
    p = CryptoPool(max_workers=2)
    yield p
    p.shutdown()


@pytest.fixture()
def passwords(pool: CryptoPool) -> PasswordEngine:
    return PasswordEngine(pool)


@pytest.fixture()
def alice(store: CredentialStore, passwords: PasswordEngine) -> User:
    """An account with ALICE_PASSWORD. The hash input includes the assigned id."""
    uid = store.create_user(User(username="alice"))
    store.update_password_hash("alice", passwords.hash(uid, ALICE_PASSWORD))
    return store.lookup_user_by_username("alice")


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        secret_key="s" * 48,
        jwt_secret="j" * 48,
        oauth_aosc_client_id=CLIENT_ID,
        oauth_aosc_client_secret=CLIENT_SECRET,
        oauth_aosc_authorize_url=AUTHORIZE_URL,
        oauth_aosc_token_url=TOKEN_URL,
        oauth_aosc_jwk_url=KEYS_URL,
        oauth_aosc_redirect_url="http://testserver/oauth/aosc",
        oauth_aosc_issuer=ISSUER,
        crypto_workers=2,
    )


@pytest.fixture()
def client(
    settings: Settings,
    store: CredentialStore,
    alice: User,
    fake_provider: FakeProvider,
) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the assembled app (REST + web UI).

    follow_redirects=False is essential: tests assert on redirect locations,
    which are invisible once the client follows the redirect.
    """
    app = create_app(settings, store=store, provider_transport=fake_provider.transport())
    app.include_router(web_router, tags=["Web UI"])
    with TestClient(app, follow_redirects=False) as c:
        yield c


def login(client: TestClient, username: str = "alice", password: str = ALICE_PASSWORD) -> httpx.Response:
    """Log in through the browser form; the client keeps the identity cookie."""
    resp = client.post("/login", data={"user": username, "pwd": password})
    assert resp.status_code == 302, resp.text
    return resp
