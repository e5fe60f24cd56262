"""Tests for main.py -- operator CLI (create-user, purge)."""

from datetime import datetime, timedelta, timezone

import pytest

from auth.store import CredentialStore
from auth.tokens import PasswordHasher
from core.config import get_settings
from main import main


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("SALT_ROUNDS", "4")
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_create_user(db_url, capsys) -> None:
    rc = main(["create-user", "--email", "Admin@Campus.edu", "--role", "ADMIN", "--password", "changeme"])
    assert rc == 0
    assert "Created ADMIN admin@campus.edu" in capsys.readouterr().out

    store = CredentialStore(db_url)
    try:
        cred = store.get_credential_by_email("admin@campus.edu")
        assert PasswordHasher(rounds=4).verify("changeme", cred.password_hash)
        user = store.get_user(cred.uid)
        assert user.verified is True
        assert user.role == "ADMIN"
    finally:
        store.close()


def test_create_user_twice_fails(db_url, capsys) -> None:
    args = ["create-user", "--email", "staff@campus.edu", "--role", "STAFF", "--password", "changeme"]
    assert main(args) == 0
    assert main(args) == 1
    assert "already registered" in capsys.readouterr().out


def test_create_user_short_password(db_url) -> None:
    assert main(["create-user", "--email", "x@campus.edu", "--password", "123"]) == 1


def test_unknown_role_rejected(db_url) -> None:
    with pytest.raises(SystemExit):
        main(["create-user", "--email", "x@campus.edu", "--role", "ROOT", "--password", "changeme"])


def test_purge(db_url, capsys) -> None:
    store = CredentialStore(db_url)
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    store.create_pending_registration("old@campus.edu", "STUDENT", "tok-old", past)
    store.close()

    assert main(["purge"]) == 0
    assert "Purged 1 expired token row(s)." in capsys.readouterr().out
