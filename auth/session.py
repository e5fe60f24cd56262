"""
auth/session.py -- Sign-in, token issuance, refresh and sign-out.

Token model:
  access token   signed {id, email, role}, 45 minutes, never stored.
  refresh token  signed {id, email, role}, 7 days, AND a refresh_tokens row.

A refresh token is accepted only when its signature verifies AND its row
exists and has not expired. The signature defeats forged tokens; the row
makes revocation (sign-out) possible before the signature expires.

Refresh does not rotate: refresh_tokens() returns the same refresh token it
was given. A stolen refresh token therefore stays usable until sign-out or
expiry. Kept for compatibility with the mobile client, which stores the
refresh token once per sign-in.

Error mapping is deliberately narrow. Only a bad signature or a missing row
becomes InvalidRefreshToken; database failures propagate unchanged so an
outage is never reported as an auth problem.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    EmailNotVerified,
    InvalidCredentials,
    InvalidFederatedToken,
    InvalidRefreshToken,
)
from auth.models import (
    PROVIDER_GOOGLE,
    ROLE_STUDENT,
    AccessTokenPayload,
    SignInResult,
    TokenPair,
    User,
    UserInfo,
)
from auth.oauth import FederationError
from auth.registration import normalize_email
from auth.store import CredentialStore
from auth.tokens import PasswordHasher, TokenError, TokenSigner
from notify.email import redact_email
from notify.push import PushMessage

logger = logging.getLogger("campus.auth.session")

WELCOME_MESSAGE = PushMessage(
    title="Welcome to Campus Logistics",
    message="Thank you for trusting and using our service. Have a great day!",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    """'Nguyen Van An' -> ('Nguyen', 'Van An'). Missing name -> (None, None)."""
    if not name or not name.strip():
        return None, None
    parts = name.split()
    return parts[0], " ".join(parts[1:]) or None


class SessionService:
    def __init__(
        self,
        store: CredentialStore,
        signer: TokenSigner,
        hasher: PasswordHasher,
        verifier,
        push_notifier,
        *,
        access_ttl_seconds: int = 45 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.hasher = hasher
        self.verifier = verifier
        self.push_notifier = push_notifier
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.clock = clock
        # Role-keyed profile augmentation. Roles without an entry add nothing.
        self._profile_loaders: dict[str, Callable[[str], dict]] = {
            ROLE_STUDENT: self._student_profile,
        }

    # ------------------------------------------------------------------
    # Password sign-in
    # ------------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> SignInResult:
        """Authenticate with email and password.

        Unknown email and wrong password both raise InvalidCredentials, and
        both cost one bcrypt comparison [C1]. An unverified account raises
        EmailNotVerified before the password is looked at. Accounts created
        through Google have no password hash and always fail here.
        """
        email = normalize_email(email)
        credential = self.store.get_credential_by_email(email)
        if credential is None:
            self.hasher.burn(password)
            raise InvalidCredentials()

        user = self.store.get_user(credential.uid)
        if user is None:
            logger.warning("Credential without user uid=%s", credential.uid)
            self.hasher.burn(password)
            raise InvalidCredentials()
        profile = self._profile_for(user)

        if not user.verified:
            raise EmailNotVerified()

        if not self.hasher.verify(password, credential.password_hash):
            raise InvalidCredentials()

        tokens = self.generate_tokens(AccessTokenPayload(id=user.id, email=email, role=user.role))
        self._send_welcome(user.id)
        logger.info("Sign-in user=%s email=%s", user.id, redact_email(email))
        return SignInResult(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            user_info=_user_info(user, email, profile),
        )

    # ------------------------------------------------------------------
    # Token issuance and refresh
    # ------------------------------------------------------------------

    def generate_tokens(self, payload: AccessTokenPayload) -> TokenPair:
        """Sign an access/refresh pair for payload and persist the refresh token row."""
        claims = payload.to_claims()
        access_token = self.signer.sign(claims, ttl_seconds=self.access_ttl_seconds)
        refresh_token = self.signer.sign(claims, ttl_seconds=self.refresh_ttl_seconds)
        expires_at = self.clock() + timedelta(seconds=self.refresh_ttl_seconds)
        self.store.create_refresh_token(payload.id, refresh_token, expires_at)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Issue a new access token for a live refresh token.

        The new access token is built from the stable claims only (id, email,
        role); the old iat/exp/jti are dropped. The refresh token is returned
        unchanged.
        """
        payload = self._verify_refresh_signature(refresh_token)

        record = self.store.get_refresh_token(refresh_token)
        if record is None or record.expires_at < self.clock():
            raise InvalidRefreshToken()
        if record.user_id != payload.id:
            logger.warning("Refresh token row/user mismatch user=%s", payload.id)
            raise InvalidRefreshToken()

        access_token = self.signer.sign(payload.to_claims(), ttl_seconds=self.access_ttl_seconds)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    # ------------------------------------------------------------------
    # Federated sign-in
    # ------------------------------------------------------------------

    def sign_in_with_google(self, id_token: str) -> SignInResult:
        """Sign in (provisioning on first use) with a Google ID token.

        The verified email is trusted as proof of ownership, so new users are
        created already verified and without a password.
        """
        try:
            identity = self.verifier.verify(id_token)
        except FederationError as exc:
            logger.info("Google ID token rejected: %s", exc)
            raise InvalidFederatedToken() from exc

        email = normalize_email(identity.email)
        credential = self.store.get_credential_by_email(email)
        if credential is None:
            first_name, last_name = _split_name(identity.name)
            try:
                user_id = self.store.provision_federated_user(
                    email,
                    provider=PROVIDER_GOOGLE,
                    first_name=first_name,
                    last_name=last_name,
                    photo_url=identity.picture,
                )
                logger.info("Provisioned federated user=%s email=%s", user_id, redact_email(email))
            except IntegrityError:
                # Concurrent first sign-in (or registration) claimed the email first
                credential = self.store.get_credential_by_email(email)
                if credential is None:
                    raise
            else:
                credential = self.store.get_credential_by_email(email)

        user = self.store.get_user(credential.uid)
        if user is None:
            logger.warning("Credential without user uid=%s", credential.uid)
            raise InvalidCredentials()
        profile = self._profile_for(user)

        tokens = self.generate_tokens(AccessTokenPayload(id=user.id, email=credential.email, role=user.role))
        info = _user_info(user, credential.email, profile)
        info.photo_url = user.photo_url or identity.picture
        return SignInResult(access_token=tokens.access_token, refresh_token=tokens.refresh_token, user_info=info)

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    def sign_out(self, refresh_token: str) -> dict:
        """Revoke a refresh token. A second call with the same token fails."""
        self._verify_refresh_signature(refresh_token)
        if not self.store.delete_refresh_token(refresh_token):
            raise InvalidRefreshToken()
        return {"message": "Sign out successful"}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _verify_refresh_signature(self, refresh_token: str) -> AccessTokenPayload:
        try:
            claims = self.signer.verify(refresh_token)
        except TokenError as exc:
            raise InvalidRefreshToken() from exc
        try:
            return AccessTokenPayload(id=claims["id"], email=claims["email"], role=claims["role"])
        except KeyError as exc:
            # Signed by us but not a session token (e.g. a completion token)
            raise InvalidRefreshToken() from exc

    def _profile_for(self, user: User) -> dict:
        loader = self._profile_loaders.get(user.role)
        return loader(user.id) if loader is not None else {}

    def _student_profile(self, user_id: str) -> dict:
        student = self.store.get_student_profile(user_id)
        if student is None:
            return {}
        return {"dormitory": student.dormitory, "building": student.building, "room": student.room}

    def _send_welcome(self, user_id: str) -> None:
        """Fire-and-forget welcome push. Never fails the sign-in."""
        try:
            self.push_notifier.send_push_notification(user_id, WELCOME_MESSAGE)
        except Exception:
            logger.warning("Could not queue welcome push user=%s", user_id, exc_info=True)


def _user_info(user: User, email: str, profile: dict) -> UserInfo:
    data = asdict(user)
    return UserInfo(email=email, profile=profile, **data)
