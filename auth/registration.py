"""
auth/registration.py -- Email-verified self registration.

Three steps, each a separate request:

  initiate_registration(email, is_mobile)
      Unregistered -> PendingVerification. Creates (or re-arms) a one-hour
      verification token and emails a link containing it.
  verify_email(token, is_mobile)
      Consumes the verification token exactly once and returns a redirect
      URL carrying a one-hour completion token (a JWT with only user_id).
  complete_registration(completion_token, profile)
      PendingVerification -> Verified. Stores password hash and profile.

No transition moves a verified user back to pending: initiate refuses
verified accounts and completion refuses users that are already verified.

Layer rule: no imports from api/. notify/ is reached only through the
email_service object passed in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyRegistered, DeliveryFailed, InvalidOrExpiredToken, InvalidState, Unauthorized
from auth.models import ROLE_STUDENT, RegistrationProfile
from auth.store import CredentialStore
from auth.tokens import PasswordHasher, TokenError, TokenSigner, generate_verification_token
from notify.email import EmailDeliveryError, redact_email

logger = logging.getLogger("campus.auth.registration")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively; store and look up the lowercase form."""
    return email.strip().lower()


class RegistrationService:
    def __init__(
        self,
        store: CredentialStore,
        signer: TokenSigner,
        hasher: PasswordHasher,
        email_service,
        *,
        app_url: str,
        frontend_url_complete_signup: str,
        mobile_url_complete_signup: str,
        verification_ttl_seconds: int = 3600,
        completion_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.hasher = hasher
        self.email_service = email_service
        self.app_url = app_url.rstrip("/")
        self.frontend_url_complete_signup = frontend_url_complete_signup
        self.mobile_url_complete_signup = mobile_url_complete_signup.rstrip("/")
        self.verification_ttl_seconds = verification_ttl_seconds
        self.completion_ttl_seconds = completion_ttl_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Step 1: initiate
    # ------------------------------------------------------------------

    def initiate_registration(self, email: str, is_mobile: bool) -> dict:
        """Create or refresh the pending account for email and send the verification link.

        Raises:
            AlreadyRegistered: the email belongs to a verified account.
            InvalidState: the credential exists but its user row does not.
            DeliveryFailed: the email could not be sent. The new token is
                already stored; a retry replaces it.
        """
        email = normalize_email(email)
        credential = self.store.get_credential_by_email(email)
        if credential is not None:
            self._check_pending(credential)

        token = generate_verification_token()
        expires_at = self.clock() + timedelta(seconds=self.verification_ttl_seconds)

        if credential is not None:
            # Prior token (if any) is overwritten and can never verify again
            self.store.upsert_verification_token(credential.uid, token, expires_at)
        else:
            try:
                user_id = self.store.create_pending_registration(email, ROLE_STUDENT, token, expires_at)
                logger.info("Pending registration created user=%s email=%s", user_id, redact_email(email))
            except IntegrityError:
                # A concurrent initiate for the same email committed first.
                # Its rows exist now, so continue down the re-arm branch.
                credential = self.store.get_credential_by_email(email)
                if credential is None:
                    raise
                self._check_pending(credential)
                self.store.upsert_verification_token(credential.uid, token, expires_at)

        link = self.verification_link(token, is_mobile)
        try:
            self.email_service.send_verification_email(email, link)
        except EmailDeliveryError as exc:
            raise DeliveryFailed() from exc

        return {"message": "Verification email sent"}

    def _check_pending(self, credential) -> None:
        """Refuse to re-arm a verified account or a credential whose user row is gone."""
        user = self.store.get_user(credential.uid)
        if user is None:
            logger.warning("Credential without user uid=%s", credential.uid)
            raise InvalidState()
        if user.verified:
            raise AlreadyRegistered()

    def verification_link(self, token: str, is_mobile: bool) -> str:
        query = urlencode({"token": token, "mobile": "true" if is_mobile else "false"})
        return f"{self.app_url}/api/v1/auth/signup/verify?{query}"

    # ------------------------------------------------------------------
    # Step 2: verify
    # ------------------------------------------------------------------

    def verify_email(self, token: str, is_mobile: bool) -> str:
        """Consume a verification token and return the completion redirect URL.

        Raises:
            InvalidOrExpiredToken: unknown token, already used, or
                now >= expires_at.
        """
        user_id = self.store.consume_verification_token(token, self.clock())
        if user_id is None:
            raise InvalidOrExpiredToken()

        completion_token = self.signer.sign({"user_id": user_id}, ttl_seconds=self.completion_ttl_seconds)
        if is_mobile:
            return f"{self.mobile_url_complete_signup}/{completion_token}"
        return f"{self.frontend_url_complete_signup}?{urlencode({'token': completion_token})}"

    # ------------------------------------------------------------------
    # Step 3: complete
    # ------------------------------------------------------------------

    def complete_registration(self, completion_token: str, profile: RegistrationProfile) -> dict:
        """Set password and profile fields and mark the user verified, all or nothing.

        Raises:
            Unauthorized: completion token is forged, expired, or not a
                completion token (no user_id claim).
            InvalidState: user missing or already verified.
        """
        try:
            claims = self.signer.verify(completion_token)
        except TokenError as exc:
            raise Unauthorized() from exc
        user_id = claims.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise Unauthorized()

        user = self.store.get_user(user_id)
        if user is None or user.verified:
            raise InvalidState()

        password_hash = self.hasher.hash(profile.password)
        completed = self.store.complete_registration(
            user_id,
            password_hash=password_hash,
            first_name=profile.first_name,
            last_name=profile.last_name,
            phone_number=profile.phone_number,
            dormitory=profile.dormitory,
            building=profile.building,
            room=profile.room,
        )
        if not completed:
            # Verified by a concurrent completion between the read and the write
            raise InvalidState()

        logger.info("Registration completed user=%s", user_id)
        return {"message": "Registration completed successfully"}
