"""
tests/test_web_auth.py -- Integration tests for browser login, logout and
the account panel.

Uses the client fixture (follow_redirects=False) so redirect Location headers
can be asserted directly.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.models import User
from conftest import ALICE_PASSWORD, login


class TestLogin:
    def test_login_form(self, client: TestClient) -> None:
        resp = client.get("/login")
        assert resp.status_code == 200
        assert 'name="user"' in resp.text
        assert 'name="pwd"' in resp.text

    def test_successful_login(self, client: TestClient) -> None:
        resp = client.post("/login", data={"user": "alice", "pwd": ALICE_PASSWORD})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/account"
        assert "identity" in resp.cookies
        assert resp.headers["cache-control"] == "no-store"

    def test_wrong_password(self, client: TestClient) -> None:
        resp = client.post("/login", data={"user": "alice", "pwd": "wrong"})
        assert resp.status_code == 401
        assert "Invalid credentials" in resp.text
        assert "identity" not in resp.cookies

    def test_unknown_user_looks_like_wrong_password(self, client: TestClient) -> None:
        resp = client.post("/login", data={"user": "mallory", "pwd": "x"})
        assert resp.status_code == 401
        assert "Invalid credentials" in resp.text

    def test_missing_field(self, client: TestClient) -> None:
        assert client.post("/login", data={"user": "alice"}).status_code == 400

    def test_already_logged_in_redirects(self, client: TestClient) -> None:
        login(client)
        resp = client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/account"

    def test_login_is_rate_limited(self, client: TestClient) -> None:
        statuses = [client.post("/login", data={"user": "ghost", "pwd": "x"}).status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429


class TestLogout:
    def test_logout_forgets_identity(self, client: TestClient) -> None:
        login(client)
        resp = client.get("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert client.get("/account").headers["location"] == "/login"

    def test_logout_when_anonymous(self, client: TestClient) -> None:
        assert client.get("/logout").status_code == 302


class TestIndex:
    def test_index_routes_by_session(self, client: TestClient) -> None:
        assert client.get("/").headers["location"] == "/login"
        login(client)
        assert client.get("/").headers["location"] == "/account"


class TestAccount:
    def test_anonymous_redirects_to_login(self, client: TestClient) -> None:
        resp = client.get("/account")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_panel(self, client: TestClient) -> None:
        login(client)
        resp = client.get("/account")
        assert resp.status_code == 200
        assert "Settings for alice" in resp.text
        assert "/oauth/aosc/new" in resp.text

    def test_tampered_identity_cookie_is_anonymous(self, client: TestClient) -> None:
        resp = client.get("/account", headers={"cookie": "identity=alice"})
        assert resp.status_code == 302

    def test_bearer_token_not_accepted(self, client: TestClient) -> None:
        creds = {"x-username": "alice", "x-password": ALICE_PASSWORD}
        token = client.get("/api/login", headers=creds).json()["token"]
        resp = client.get("/account", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_new_password_mismatch(self, client: TestClient) -> None:
        login(client)
        resp = client.post("/account", data={"cpwd": ALICE_PASSWORD, "npwd": "one", "cnpwd": "two"})
        assert resp.status_code == 200
        assert "New password and Confirm new password mismatch!" in resp.text

    def test_wrong_current_password(self, client: TestClient) -> None:
        login(client)
        resp = client.post("/account", data={"cpwd": "wrong", "npwd": "n3w", "cnpwd": "n3w"})
        assert resp.status_code == 401
        assert "Current password is incorrect!" in resp.text

    def test_change_password(self, client: TestClient, alice: User) -> None:
        login(client)
        resp = client.post("/account", data={"cpwd": ALICE_PASSWORD, "npwd": "n3w-pass", "cnpwd": "n3w-pass"})
        assert resp.status_code == 200
        assert "Password changed successfully" in resp.text

        client.get("/logout")
        assert client.post("/login", data={"user": "alice", "pwd": ALICE_PASSWORD}).status_code == 401
        login(client, password="n3w-pass")

    def test_change_password_anonymous(self, client: TestClient) -> None:
        resp = client.post("/account", data={"cpwd": "a", "npwd": "b", "cnpwd": "b"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
