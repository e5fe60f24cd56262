"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_* functions are the mappers. Services never touch SQL directly.

Transactions:
  Every multi-row write runs inside one engine.begin() block, so either all
  rows become visible or none do:
    - create_pending_registration(): user + student profile + credential +
      verification token
    - complete_registration(): user flags/profile + student fields + password
    - provision_federated_user(): user + student profile + auth provider +
      credential
  Unique constraints (credentials.email, verification_tokens.user_id,
  verification_tokens.token, refresh_tokens.token) are the correctness
  backstop for concurrent requests. Violations surface as
  sqlalchemy.exc.IntegrityError for the caller to resolve.

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision. A fixed
  width keeps string order equal to time order, which purge_expired() relies
  on for its range delete.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, notify/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    ROLE_STUDENT,
    STUDENT_STATUS_AVAILABLE,
    Credential,
    RefreshToken,
    StudentProfile,
    User,
    VerificationToken,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("phone_number", String(32)),
    Column("photo_url", Text),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("role", String(16), nullable=False, server_default=ROLE_STUDENT),
    Column("created_at", String(32), nullable=False),
)

_students = Table(
    "students",
    metadata,
    Column("student_id", String(36), ForeignKey("users.id"), primary_key=True),
    Column("dormitory", String(255)),
    Column("building", String(255)),
    Column("room", String(32)),
    Column("status", String(32)),
)

_credentials = Table(
    "credentials",
    metadata,
    Column("uid", String(36), ForeignKey("users.id"), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL until registration completes / for federated users
)

_auth_providers = Table(
    "auth_providers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("type", String(30), nullable=False),  # "GOOGLE"
)

_verification_tokens = Table(
    "verification_tokens",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id"), primary_key=True),  # at most one per user
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    """Fixed-width ISO 8601 UTC string (always includes microseconds)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        # Naive value -- assume UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, credentials, verification and refresh tokens.

    Usage:
        store = CredentialStore("sqlite:///campus_auth.db")
        cred = store.get_credential_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_credential_by_email(self, email: str) -> Credential | None:
        """Look up a credential by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.email == email)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_credential_by_uid(self, uid: str) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.uid == uid)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_user(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_student_profile(self, user_id: str) -> StudentProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_students.select().where(_students.c.student_id == user_id)).fetchone()
        return _row_to_student(row) if row is not None else None

    def get_verification_token(self, user_id: str) -> VerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(_verification_tokens.c.user_id == user_id)
            ).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Look up a refresh token record by its signed string.

        Always reads the database -- validity is never cached, so a token
        deleted by sign-out is rejected on the very next request.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_auth_providers(self, user_id: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_auth_providers.c.type).where(_auth_providers.c.user_id == user_id)
            ).fetchall()
        return [r.type for r in rows]

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def create_pending_registration(self, email: str, role: str, token: str, expires_at: datetime) -> str:
        """Create an unverified user with credential, profile and verification token.

        One transaction: a crash or constraint violation part-way leaves no
        rows behind. Raises IntegrityError if the email is already taken
        (e.g. a concurrent initiate for the same address won the race).

        Returns the new user id.
        """
        user_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(id=user_id, verified=0, role=role, created_at=_now_iso()))
            if role == ROLE_STUDENT:
                conn.execute(_students.insert().values(student_id=user_id))
            conn.execute(_credentials.insert().values(uid=user_id, email=email, password_hash=None))
            conn.execute(
                _verification_tokens.insert().values(user_id=user_id, token=token, expires_at=_iso(expires_at))
            )
        return user_id

    def upsert_verification_token(self, user_id: str, token: str, expires_at: datetime) -> None:
        """Replace the user's verification token, creating the row if absent.

        Idempotent under retry: the last writer's token is the only one that
        verifies afterwards.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where(_verification_tokens.c.user_id == user_id)
                .values(token=token, expires_at=_iso(expires_at))
            )
            if result.rowcount == 0:
                conn.execute(
                    _verification_tokens.insert().values(user_id=user_id, token=token, expires_at=_iso(expires_at))
                )

    def consume_verification_token(self, token: str, now: datetime) -> str | None:
        """Check expiry and delete a verification token in one transaction.

        Returns the owning user id, or None when the token is unknown,
        expired (now >= expires_at) or was consumed by a concurrent request.
        Expired rows are left for purge_expired().
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _verification_tokens.select().where(_verification_tokens.c.token == token)
            ).fetchone()
            if row is None or _parse_iso(row.expires_at) <= now:
                return None
            result = conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.token == token) & (_verification_tokens.c.user_id == row.user_id)
                )
            )
            if result.rowcount != 1:
                return None
        return row.user_id

    def complete_registration(
        self,
        user_id: str,
        *,
        password_hash: str,
        first_name: str | None = None,
        last_name: str | None = None,
        phone_number: str | None = None,
        dormitory: str | None = None,
        building: str | None = None,
        room: str | None = None,
    ) -> bool:
        """Mark a pending user verified and store profile fields and password.

        The users UPDATE is guarded by verified = 0, so two concurrent
        completions for the same user cannot both succeed. Returns False
        (nothing written) when the user is missing or already verified.
        Any failure in a later write rolls the whole completion back.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.verified == 0))
                .values(first_name=first_name, last_name=last_name, phone_number=phone_number, verified=1)
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                _students.update()
                .where(_students.c.student_id == user_id)
                .values(dormitory=dormitory, building=building, room=room)
            )
            conn.execute(_credentials.update().where(_credentials.c.uid == user_id).values(password_hash=password_hash))
        return True

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision_federated_user(
        self,
        email: str,
        *,
        provider: str,
        first_name: str | None,
        last_name: str | None,
        photo_url: str | None,
        role: str = ROLE_STUDENT,
    ) -> str:
        """Create a pre-verified user for a federated identity.

        One transaction: user, default student profile, auth provider marker
        and a credential with no password. Raises IntegrityError if the email
        already has a credential. Returns the new user id.
        """
        user_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    first_name=first_name,
                    last_name=last_name,
                    photo_url=photo_url,
                    verified=1,
                    role=role,
                    created_at=_now_iso(),
                )
            )
            if role == ROLE_STUDENT:
                conn.execute(_students.insert().values(student_id=user_id, status=STUDENT_STATUS_AVAILABLE))
            conn.execute(_auth_providers.insert().values(user_id=user_id, type=provider))
            conn.execute(_credentials.insert().values(uid=user_id, email=email, password_hash=None))
        return user_id

    def create_account(
        self,
        email: str,
        *,
        role: str,
        password_hash: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> str:
        """Create a verified account with a password (operator bootstrap).

        Raises IntegrityError if the email is already registered.
        """
        user_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    first_name=first_name,
                    last_name=last_name,
                    verified=1,
                    role=role,
                    created_at=_now_iso(),
                )
            )
            if role == ROLE_STUDENT:
                conn.execute(_students.insert().values(student_id=user_id, status=STUDENT_STATUS_AVAILABLE))
            conn.execute(_credentials.insert().values(uid=user_id, email=email, password_hash=password_hash))
        return user_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: str, token: str, expires_at: datetime) -> int:
        """Persist a refresh token record and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(token=token, user_id=user_id, expires_at=_iso(expires_at))
            )
            return result.inserted_primary_key[0]

    def delete_refresh_token(self, token: str) -> bool:
        """Delete a refresh token record. Returns True if a row was removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> int:
        """Delete expired verification and refresh token rows.

        Verification tokens are dead at now >= expires_at; refresh tokens at
        expires_at < now (matching the checks in the flows). Returns the
        total number of rows removed.
        """
        cutoff = _iso(now)
        with self.engine.begin() as conn:
            verif = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.expires_at <= cutoff))
            refresh = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff))
        return verif.rowcount + refresh.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        role=row.role,
        verified=bool(row.verified),
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        photo_url=row.photo_url,
        created_at=row.created_at,
    )


def _row_to_student(row) -> StudentProfile:
    return StudentProfile(
        student_id=row.student_id,
        dormitory=row.dormitory,
        building=row.building,
        room=row.room,
        status=row.status,
    )


def _row_to_credential(row) -> Credential:
    return Credential(uid=row.uid, email=row.email, password_hash=row.password_hash)


def _row_to_verification_token(row) -> VerificationToken:
    return VerificationToken(user_id=row.user_id, token=row.token, expires_at=_parse_iso(row.expires_at))


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=_parse_iso(row.expires_at),
    )
