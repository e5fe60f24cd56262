"""
auth/tokens.py -- JWT signing and password hashing.

Security design decisions:
  JWT: python-jose with HS256. TokenSigner is stateless: a pure function of
       the secret key, the payload and a TTL. Every token gets iat, exp and a
       random jti so two tokens signed for the same payload in the same second
       are still distinct strings (refresh tokens are unique lookup keys).
       verify() raises TokenError on any failure; the flows translate that
       into their own client-facing error.

  Passwords: bcrypt directly (no passlib wrapper). The cost factor is injected
       from SALT_ROUNDS. The dummy hash enables timing equalization: verify()
       always runs bcrypt, even when the account has no password, so response
       time does not reveal whether an email exists [C1].

  Verification tokens: uuid4 strings. They are looked up by value and are
       single-use, so 122 bits of randomness is plenty.

Layer rule: no imports from api/ or notify/. Secrets are passed in by the
caller -- this module never reads configuration itself.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

logger = logging.getLogger("campus.auth.tokens")

_ALGORITHM = "HS256"

# bcrypt only considers the first 72 bytes; newer releases raise instead of
# truncating, so inputs are cut explicitly before hashing and comparing.
_BCRYPT_MAX_BYTES = 72


class TokenError(Exception):
    """InvalidSignatureOrExpired: the token is malformed, forged or past exp."""


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenSigner:
    """Produce and validate signed, expiring tokens carrying a typed payload.

    Usage:
        signer = TokenSigner(settings.secret_key)
        token = signer.sign({"id": uid, "email": email, "role": role}, ttl_seconds=2700)
        claims = signer.verify(token)   # raises TokenError
    """

    def __init__(self, secret_key: str, algorithm: str = _ALGORITHM) -> None:
        if not secret_key:
            raise ValueError("TokenSigner requires a non-empty secret key")
        self._secret_key = secret_key
        self._algorithm = algorithm

    def sign(self, payload: dict, ttl_seconds: int) -> str:
        """Encode payload with iat/exp/jti claims. Caller-supplied values for those keys are overwritten."""
        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims["iat"] = now
        claims["exp"] = now + timedelta(seconds=ttl_seconds)
        claims["jti"] = uuid.uuid4().hex
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> dict:
        """Decode and verify a token. Returns the full claim dict.

        Raises:
            TokenError: bad signature, malformed token or expired exp claim.
        """
        if not token:
            raise TokenError("empty token")
        try:
            return jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise TokenError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _encode_password(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """One-way salted bcrypt hashing with constant-time comparison."""

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds
        # Timing equalization dummy hash [C1]. Computed once per hasher with
        # the same cost factor as real hashes.
        self._dummy_hash = self.hash("campus_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password."""
        return bcrypt.hashpw(_encode_password(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed.

        hashed=None (no local password) still burns one bcrypt comparison
        against the dummy hash and returns False.
        """
        if hashed is None:
            self._checkpw(plain, self._dummy_hash)
            return False
        return self._checkpw(plain, hashed)

    def burn(self, plain: str) -> None:
        """Run one throwaway comparison. Used when the account does not exist [C1]."""
        self._checkpw(plain, self._dummy_hash)

    @staticmethod
    def _checkpw(plain: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(_encode_password(plain), hashed.encode("utf-8"))
        except ValueError:
            # Corrupt hash in the store. Treated as a mismatch, never a crash.
            logger.warning("Stored password hash could not be parsed")
            return False


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


def generate_verification_token() -> str:
    """Return a fresh opaque verification token (uuid4 string)."""
    return str(uuid.uuid4())
