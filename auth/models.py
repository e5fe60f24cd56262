"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the services do the work.

Layer rule: no imports from api/, notify/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ROLE_STUDENT = "STUDENT"
ROLE_ADMIN = "ADMIN"
ROLE_STAFF = "STAFF"
ROLES: tuple[str, ...] = (ROLE_ADMIN, ROLE_STAFF, ROLE_STUDENT)

PROVIDER_GOOGLE = "GOOGLE"

STUDENT_STATUS_AVAILABLE = "AVAILABLE"


@dataclass
class User:
    """An account in the campus logistics system.

    verified is False between registration initiation and completion.
    Federated users are created with verified=True because the identity
    provider already proved ownership of the email.
    """

    id: str
    role: str  # "STUDENT", "ADMIN", "STAFF"
    verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    photo_url: str | None = None
    created_at: str | None = None


@dataclass
class StudentProfile:
    """Role-specific profile for STUDENT users (1:1 with User)."""

    student_id: str
    dormitory: str | None = None
    building: str | None = None
    room: str | None = None
    status: str | None = None


@dataclass
class Credential:
    """Email login credential (1:1 with User).

    password_hash is None until registration completes, and stays None for
    federated-only users -- they have no local password.
    """

    uid: str
    email: str
    password_hash: str | None = None


@dataclass
class VerificationToken:
    """One outstanding email-verification token per user.

    Invalid once now >= expires_at, whether or not the row has been purged.
    """

    user_id: str
    token: str
    expires_at: datetime


@dataclass
class RefreshToken:
    """Server-side record that makes a signed refresh token revocable."""

    token: str
    user_id: str
    expires_at: datetime
    id: int | None = None


@dataclass
class AccessTokenPayload:
    """Stable claims embedded in access and refresh tokens.

    iat/exp/jti are added by the signer and deliberately not part of this
    shape, so re-signing from a decoded payload never carries them over.
    """

    id: str
    email: str
    role: str

    def to_claims(self) -> dict:
        return {"id": self.id, "email": self.email, "role": self.role}


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class UserInfo:
    """User projection returned to clients on sign-in. Never holds a password hash."""

    id: str
    email: str
    role: str
    verified: bool
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    photo_url: str | None = None
    created_at: str | None = None
    profile: dict = field(default_factory=dict)  # role-specific fields, e.g. dormitory/building/room


@dataclass
class SignInResult:
    access_token: str
    refresh_token: str
    user_info: UserInfo


@dataclass
class RegistrationProfile:
    """Fields supplied by the client at registration completion."""

    password: str
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    dormitory: str | None = None
    building: str | None = None
    room: str | None = None


@dataclass
class FederatedIdentity:
    """Verified claim set returned by an identity federation verifier."""

    email: str
    name: str | None = None
    picture: str | None = None
    subject: str | None = None
