"""
tests/test_cli.py -- Tests for the pakreq-admin command (main.py).

Each test points --database-url at a throwaway SQLite file, since the command
closes its store on exit and an in-memory database would vanish with it.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from auth.passwords import PasswordEngine
from auth.store import CredentialStore
from main import main


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'pakreq.db'}"


def _run(db_url: str, *args: str) -> int:
    return main(["--database-url", db_url, *args])


class TestAddUser:
    def test_creates_user_with_password(self, db_url: str, passwords: PasswordEngine) -> None:
        assert _run(db_url, "add-user", "alice", "--password", "s3cret") == 0
        store = CredentialStore(db_url)
        try:
            user = store.lookup_user_by_username("alice")
            assert user is not None
            assert user.is_admin is False
            assert passwords.verify(user.id, "s3cret", user.password_hash) is True
        finally:
            store.close()

    def test_admin_without_password(self, db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(db_url, "add-user", "root", "--admin", "--no-password") == 0
        assert "Created admin 'root'" in capsys.readouterr().out
        store = CredentialStore(db_url)
        try:
            user = store.lookup_user_by_username("root")
            assert user.is_admin is True
            assert user.password_hash is None
        finally:
            store.close()

    def test_duplicate_username(self, db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
        _run(db_url, "add-user", "alice", "--no-password")
        assert _run(db_url, "add-user", "alice", "--no-password") == 1
        assert "already exists" in capsys.readouterr().out

    def test_prompted_password_mismatch(
        self, db_url: str, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        answers = iter(["one", "two"])
        monkeypatch.setattr("getpass.getpass", lambda prompt="": next(answers))
        assert _run(db_url, "add-user", "alice") == 1
        assert "mismatch" in capsys.readouterr().out

    def test_password_flags_are_exclusive(self, db_url: str) -> None:
        with pytest.raises(SystemExit):
            _run(db_url, "add-user", "alice", "--password", "x", "--no-password")


class TestEnvironment:
    def test_production_without_web_secrets(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, passwords: PasswordEngine
    ) -> None:
        """The CLI only needs DATABASE_URL, even with DEBUG off."""
        db_url = f"sqlite:///{tmp_path / 'prod.db'}"
        monkeypatch.chdir(tmp_path)  # no stray .env
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.delenv("SECRET_KEY", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("DATABASE_URL", db_url)

        assert main(["add-user", "bob", "--password", "pw"]) == 0
        store = CredentialStore(db_url)
        try:
            bob = store.lookup_user_by_username("bob")
            assert passwords.verify(bob.id, "pw", bob.password_hash) is True
        finally:
            store.close()


class TestSetPassword:
    def test_replaces_hash(self, db_url: str, passwords: PasswordEngine) -> None:
        _run(db_url, "add-user", "alice", "--password", "old")
        assert _run(db_url, "set-password", "alice", "--password", "new") == 0
        store = CredentialStore(db_url)
        try:
            user = store.lookup_user_by_username("alice")
            assert passwords.verify(user.id, "new", user.password_hash) is True
            assert passwords.verify(user.id, "old", user.password_hash) is False
        finally:
            store.close()

    def test_unknown_user(self, db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(db_url, "set-password", "ghost", "--password", "x") == 1
        assert "No user named 'ghost'" in capsys.readouterr().out


class TestShowUser:
    def test_prints_account(self, db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
        _run(db_url, "add-user", "alice", "--password", "pw")
        capsys.readouterr()
        assert _run(db_url, "show-user", "alice") == 0
        out = capsys.readouterr().out
        assert "username:  alice" in out
        assert "password:  set" in out
        assert "linked:    none" in out

    def test_unknown_user(self, db_url: str) -> None:
        assert _run(db_url, "show-user", "ghost") == 1
