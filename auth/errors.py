"""
auth/errors.py -- Typed failures raised by the registration and session flows.

Every AuthError carries a stable machine-readable code, a client-safe message
and the HTTP status the API layer maps it to. None of these are retried by
the core.

Infrastructure failures (database connectivity, constraint violations that
the flows do not expect) are NOT AuthErrors. They propagate as SQLAlchemy
exceptions so an outage is never reported as a bad token.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for client-facing authentication failures."""

    code: str = "auth_error"
    message: str = "Authentication failed."
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class AlreadyRegistered(AuthError):
    code = "already_registered"
    message = "Email already registered."
    status_code = 409


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    message = "Invalid or expired token."
    status_code = 400


class Unauthorized(AuthError):
    code = "unauthorized"
    message = "Invalid or expired token."
    status_code = 401


class InvalidState(AuthError):
    code = "invalid_state"
    message = "User not found or already verified."
    status_code = 400


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    message = "Email not verified."
    status_code = 401


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    message = "Invalid refresh token."
    status_code = 401


class InvalidFederatedToken(AuthError):
    code = "invalid_federated_token"
    message = "Invalid Google ID token."
    status_code = 401


class DeliveryFailed(AuthError):
    """The verification email could not be handed to the mail server.

    The verification token is already persisted when this is raised; calling
    initiate again replaces it with a fresh one.
    """

    code = "delivery_failed"
    message = "Verification email could not be sent. Please try again."
    status_code = 503
