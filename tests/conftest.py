"""
tests/conftest.py -- Shared test fixtures for the campus auth tests.

This module provides:
  - store / signer / hasher: real collaborators on a private in-memory DB
  - FakeEmailService, FakePushNotifier, FakeVerifier: recording doubles for
    the outbound edges (SMTP, push gateway, Google JWKS)
  - clock: a settable clock injected into the services
  - registration / sessions: services wired from the pieces above
  - api_client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for api_client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Service-level fixtures run on one thread, so plain
:memory: is enough there.

DEBUG and RATE_LIMIT_ENABLED must be set before any api/core import so
get_settings() auto-generates SECRET_KEY and the shared limiter is built
disabled.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import FederatedIdentity, RegistrationProfile
from auth.oauth import FederationError
from auth.registration import RegistrationService
from auth.session import SessionService
from auth.store import CredentialStore
from auth.tokens import PasswordHasher, TokenSigner
from notify.email import EmailDeliveryError

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"

APP_URL = "http://api.test"
FRONTEND_URL = "http://web.test/signup/complete"
MOBILE_URL = "campus://signup/complete"


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class FakeEmailService:
    """Records every verification email instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send_verification_email(self, to_email: str, link: str) -> None:
        if self.fail:
            raise EmailDeliveryError("smtp down")
        self.sent.append((to_email, link))

    def last_token(self, to_email: str | None = None) -> str:
        """Extract the verification token from the most recent link (optionally for one recipient)."""
        links = [link for to, link in self.sent if to_email is None or to == to_email]
        return parse_qs(urlparse(links[-1]).query)["token"][0]


class FakePushNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, object]] = []
        self.fail = False

    def send_push_notification(self, user_id, message):
        if self.fail:
            raise RuntimeError("push pool is shut down")
        self.sent.append((user_id, message))

    def close(self) -> None:
        pass


class FakeVerifier:
    """Returns the configured identity, or raises FederationError when identity is None."""

    def __init__(self) -> None:
        self.identity: FederatedIdentity | None = None

    def verify(self, id_token: str) -> FederatedIdentity:
        if self.identity is None or id_token != "good-id-token":
            raise FederationError("rejected by fake verifier")
        return self.identity


@dataclass
class Clock:
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(TEST_SECRET)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    # Minimum bcrypt cost keeps the suite fast
    return PasswordHasher(rounds=4)


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def push() -> FakePushNotifier:
    return FakePushNotifier()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def clock() -> Clock:
    return Clock()


def _build_services(store, signer, hasher, email_service, push, verifier, clock):
    registration = RegistrationService(
        store,
        signer,
        hasher,
        email_service,
        app_url=APP_URL,
        frontend_url_complete_signup=FRONTEND_URL,
        mobile_url_complete_signup=MOBILE_URL,
        clock=clock,
    )
    sessions = SessionService(store, signer, hasher, verifier, push, clock=clock)
    return registration, sessions


@pytest.fixture
def registration(store, signer, hasher, email_service, push, verifier, clock) -> RegistrationService:
    return _build_services(store, signer, hasher, email_service, push, verifier, clock)[0]


@pytest.fixture
def sessions(store, signer, hasher, email_service, push, verifier, clock) -> SessionService:
    return _build_services(store, signer, hasher, email_service, push, verifier, clock)[1]


def completion_token_from(url: str) -> str:
    """Pull the completion JWT out of a web (?token=) or mobile (/<token>) redirect URL."""
    parsed = urlparse(url)
    if parsed.query:
        return parse_qs(parsed.query)["token"][0]
    return url.rsplit("/", 1)[-1]


@pytest.fixture(scope="session")
def token_from_redirect():
    return completion_token_from


@pytest.fixture
def register_user(registration, email_service):
    """Drive the three registration steps and return the new user's email."""

    def _register(email: str, password: str = "s3cret-pass", **profile) -> str:
        registration.initiate_registration(email, False)
        url = registration.verify_email(email_service.last_token(email.lower()), False)
        registration.complete_registration(
            completion_token_from(url), RegistrationProfile(password=password, **profile)
        )
        return email

    return _register


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    store: CredentialStore
    signer: TokenSigner
    email: FakeEmailService
    push: FakePushNotifier
    verifier: FakeVerifier


def _patch_lifespan(ctx: ApiContext, hasher: PasswordHasher):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and doubles into app.state so TestClient routes see
    an isolated DB and never touch SMTP, the push gateway or Google.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        registration, sessions = _build_services(
            ctx.store, ctx.signer, hasher, ctx.email, ctx.push, ctx.verifier, lambda: datetime.now(timezone.utc)
        )
        app.state.store = ctx.store
        app.state.signer = ctx.signer
        app.state.push = ctx.push
        app.state.registration = registration
        app.state.sessions = sessions
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(hasher, request) -> Generator[tuple[TestClient, ApiContext], None, None]:
    """Yield (client, context) for API integration tests.

    One TestClient and one shared-memory DB per test module. Tests in a
    module share state, so each uses its own email addresses.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = CredentialStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    ctx = ApiContext(
        store=store,
        signer=TokenSigner(TEST_SECRET),
        email=FakeEmailService(),
        push=FakePushNotifier(),
        verifier=FakeVerifier(),
    )
    app.router.lifespan_context = _patch_lifespan(ctx, hasher)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, ctx

    store.close()
