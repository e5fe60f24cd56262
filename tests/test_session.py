"""Unit tests for auth/session.py -- sign-in, refresh, Google sign-in, sign-out.

Covers:
- password sign-in returns tokens + user info with the student profile
- unknown email / wrong password / unverified / federated-only accounts
- refresh issues a new access token and keeps the refresh token
- refresh rejects forged, revoked, expired and completion tokens
- sign-out revokes once; a second sign-out fails
- Google sign-in provisions on first use and reuses the account afterwards
- welcome push failures never fail the sign-in
"""

from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.dependencies import decode_access_token
from auth.errors import EmailNotVerified, InvalidCredentials, InvalidFederatedToken, InvalidRefreshToken
from auth.models import PROVIDER_GOOGLE, ROLE_STUDENT, AccessTokenPayload, FederatedIdentity
from auth.session import WELCOME_MESSAGE

EMAIL = "an@campus.edu"
PASSWORD = "s3cret-pass"


@pytest.fixture
def registered(register_user, store) -> str:
    """A verified student; returns the user id."""
    register_user(EMAIL, PASSWORD, first_name="An", last_name="Nguyen", dormitory="A", building="B1", room="101")
    return store.get_credential_by_email(EMAIL).uid


# ---------------------------------------------------------------------------
# Password sign-in
# ---------------------------------------------------------------------------


class TestSignIn:
    def test_success(self, sessions, registered, signer, push) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)

        payload = decode_access_token(signer, result.access_token)
        assert payload == AccessTokenPayload(id=registered, email=EMAIL, role=ROLE_STUDENT)

        info = result.user_info
        assert info.id == registered
        assert info.email == EMAIL
        assert info.verified is True
        assert info.first_name == "An"
        assert info.profile == {"dormitory": "A", "building": "B1", "room": "101"}
        assert push.sent == [(registered, WELCOME_MESSAGE)]

    def test_email_lookup_is_case_insensitive(self, sessions, registered) -> None:
        assert sessions.sign_in("AN@campus.edu", PASSWORD).user_info.id == registered

    def test_refresh_token_is_persisted(self, sessions, registered, store, clock) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)
        rec = store.get_refresh_token(result.refresh_token)
        assert rec.user_id == registered
        assert rec.expires_at == clock() + timedelta(days=7)

    def test_wrong_password(self, sessions, registered) -> None:
        with pytest.raises(InvalidCredentials):
            sessions.sign_in(EMAIL, "wrong-pass")

    def test_unknown_email_same_error(self, sessions) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            sessions.sign_in("nobody@campus.edu", PASSWORD)
        assert exc_info.value.code == "invalid_credentials"

    def test_unverified_account(self, sessions, registration) -> None:
        registration.initiate_registration(EMAIL, False)
        with pytest.raises(EmailNotVerified):
            sessions.sign_in(EMAIL, PASSWORD)

    def test_federated_account_has_no_password(self, sessions, store) -> None:
        store.provision_federated_user(EMAIL, provider=PROVIDER_GOOGLE, first_name=None, last_name=None, photo_url=None)
        with pytest.raises(InvalidCredentials):
            sessions.sign_in(EMAIL, "")

    def test_push_failure_does_not_fail_sign_in(self, sessions, registered, push) -> None:
        push.fail = True
        result = sessions.sign_in(EMAIL, PASSWORD)
        assert result.access_token


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_generate_then_refresh_round_trip(self, sessions, registered, signer) -> None:
        payload = AccessTokenPayload(id=registered, email=EMAIL, role=ROLE_STUDENT)
        pair = sessions.generate_tokens(payload)
        assert pair.access_token != pair.refresh_token

        refreshed = sessions.refresh_tokens(pair.refresh_token)
        assert refreshed.refresh_token == pair.refresh_token
        assert decode_access_token(signer, refreshed.access_token) == payload

    def test_refresh_keeps_refresh_token(self, sessions, registered, signer) -> None:
        first = sessions.sign_in(EMAIL, PASSWORD)
        pair = sessions.refresh_tokens(first.refresh_token)

        assert pair.refresh_token == first.refresh_token
        assert pair.access_token != first.access_token
        assert decode_access_token(signer, pair.access_token).id == registered

        # Repeatable until revoked or expired
        assert sessions.refresh_tokens(first.refresh_token).refresh_token == first.refresh_token

    def test_forged_token(self, sessions) -> None:
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh_tokens("forged.refresh.token")

    def test_signed_but_unknown_token(self, sessions, signer, registered) -> None:
        token = signer.sign({"id": registered, "email": EMAIL, "role": ROLE_STUDENT}, ttl_seconds=60)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh_tokens(token)

    def test_completion_token_is_not_a_refresh_token(self, sessions, signer, registered) -> None:
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh_tokens(signer.sign({"user_id": registered}, ttl_seconds=60))

    def test_expired_row(self, sessions, registered, clock) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)
        clock.advance(days=7, seconds=1)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh_tokens(result.refresh_token)

    def test_revoked_token(self, sessions, registered) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)
        sessions.sign_out(result.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh_tokens(result.refresh_token)

    def test_refresh_does_not_swallow_store_errors(self, sessions, registered, store) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)

        def db_down(conn, cursor, statement, parameters, context, executemany):
            raise OperationalError(statement, parameters, Exception("database is locked"))

        event.listen(store.engine, "before_cursor_execute", db_down)
        try:
            with pytest.raises(OperationalError):
                sessions.refresh_tokens(result.refresh_token)
        finally:
            event.remove(store.engine, "before_cursor_execute", db_down)


# ---------------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------------


class TestSignOut:
    def test_sign_out_once(self, sessions, registered, store) -> None:
        result = sessions.sign_in(EMAIL, PASSWORD)
        assert sessions.sign_out(result.refresh_token) == {"message": "Sign out successful"}
        assert store.get_refresh_token(result.refresh_token) is None
        with pytest.raises(InvalidRefreshToken):
            sessions.sign_out(result.refresh_token)

    def test_sign_out_only_revokes_that_session(self, sessions, registered) -> None:
        phone = sessions.sign_in(EMAIL, PASSWORD)
        laptop = sessions.sign_in(EMAIL, PASSWORD)
        sessions.sign_out(phone.refresh_token)
        assert sessions.refresh_tokens(laptop.refresh_token).refresh_token == laptop.refresh_token

    def test_forged_token(self, sessions) -> None:
        with pytest.raises(InvalidRefreshToken):
            sessions.sign_out("garbage")


# ---------------------------------------------------------------------------
# Google sign-in
# ---------------------------------------------------------------------------

GOOGLE_IDENTITY = FederatedIdentity(
    email="Gia@Campus.edu", name="Gia Tran Le", picture="https://photos.test/gia.png", subject="g-123"
)


class TestGoogleSignIn:
    def test_first_sign_in_provisions_user(self, sessions, verifier, store, signer) -> None:
        verifier.identity = GOOGLE_IDENTITY
        result = sessions.sign_in_with_google("good-id-token")

        cred = store.get_credential_by_email("gia@campus.edu")
        assert cred is not None
        assert cred.password_hash is None
        user = store.get_user(cred.uid)
        assert user.verified is True
        assert (user.first_name, user.last_name) == ("Gia", "Tran Le")
        assert store.get_auth_providers(cred.uid) == [PROVIDER_GOOGLE]

        assert result.user_info.photo_url == "https://photos.test/gia.png"
        assert decode_access_token(signer, result.access_token).email == "gia@campus.edu"
        assert store.get_refresh_token(result.refresh_token) is not None

    def test_second_sign_in_reuses_account(self, sessions, verifier, store) -> None:
        verifier.identity = GOOGLE_IDENTITY
        first = sessions.sign_in_with_google("good-id-token")
        second = sessions.sign_in_with_google("good-id-token")
        assert first.user_info.id == second.user_info.id
        assert store.count_users() == 1

    def test_existing_password_account_is_reused(self, sessions, verifier, registered) -> None:
        verifier.identity = FederatedIdentity(email=EMAIL, name="An Nguyen", picture=None, subject="g-1")
        result = sessions.sign_in_with_google("good-id-token")
        assert result.user_info.id == registered
        # Password sign-in still works afterwards
        assert sessions.sign_in(EMAIL, PASSWORD).user_info.id == registered

    def test_rejected_token(self, sessions, verifier, store) -> None:
        verifier.identity = None
        with pytest.raises(InvalidFederatedToken):
            sessions.sign_in_with_google("bad-id-token")
        assert store.count_users() == 0

    def test_concurrent_provisioning_race(self, sessions, verifier, store, monkeypatch) -> None:
        verifier.identity = GOOGLE_IDENTITY
        real_provision = store.provision_federated_user

        def lose_race(email, **kwargs):
            # Another request provisions the same email first
            real_provision(email, **kwargs)
            raise IntegrityError("INSERT INTO credentials", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(store, "provision_federated_user", lose_race)
        result = sessions.sign_in_with_google("good-id-token")
        assert result.user_info.email == "gia@campus.edu"
        assert store.count_users() == 1
