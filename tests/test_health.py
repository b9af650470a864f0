"""
tests/test_health.py -- Integration tests for the HEAD / liveness ping.

Covers:
  - 204 with an empty body while the credential store answers
  - 500 when the store raises, with no detail in the response
  - No session required, and GET / still redirects
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.store import CredentialStore


def test_ping_returns_204(client):
    """Ping succeeds without any session cookie."""
    resp = client.head("/")
    assert resp.status_code == 204
    assert resp.content == b""


def test_ping_reports_store_failure(
    client: TestClient, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
):
    """A store that cannot answer turns the ping into a bare 500."""

    def _down():
        raise OperationalError("SELECT", {}, Exception("unable to open database file"))

    monkeypatch.setattr(store, "count_users", _down)
    resp = client.head("/")
    assert resp.status_code == 500
    assert resp.content == b""


def test_get_index_still_redirects(client):
    """The ping only claims HEAD; GET / keeps routing by session."""
    resp = client.get("/")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/login"
