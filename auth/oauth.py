"""
auth/oauth.py -- Google ID token verification for federated sign-in.

The mobile and web clients run the Google sign-in flow themselves and post
the resulting OIDC id_token. This module checks that token locally:

  1. Signature against Google's published JWKS (fetched with requests and
     cached for jwks_cache_seconds). Only RS256 is accepted, so a token
     whose header names a symmetric algorithm never reaches a key.
  2. iss is Google, aud is our client id, exp/iat are valid (authlib JOSE).
  3. [H1] email_verified must be true. An unverified email could be a
     victim's address added by an attacker; accepting it would let them take
     over the matching campus account.

[H3] With no client id configured, every token is refused unless the
verifier was built with allow_any_audience (DEBUG only). An unpinned
audience would accept tokens Google issued to any other OAuth client.

Google rotates its signing keys. A token whose kid is missing from the
cached set triggers one refetch, at most every jwks_refetch_seconds.

Failures of the assertion itself raise FederationError, which the session
flow turns into InvalidFederatedToken. Network failures while fetching the
JWKS are NOT assertion failures -- requests exceptions propagate so an outage
is reported as one.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
import threading
import time

import requests
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from auth.models import FederatedIdentity

logger = logging.getLogger("campus.auth.oauth")

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]

_jwt = JsonWebToken(["RS256"])


class FederationError(Exception):
    """The identity assertion is invalid, expired, or lacks a verified email."""


def _unverified_kid(id_token: str) -> str | None:
    """Read the kid from the token header. Nothing is verified here."""
    try:
        header = json_loads(urlsafe_b64decode(to_bytes(id_token.split(".", 1)[0])))
    except ValueError:
        return None
    kid = header.get("kid") if isinstance(header, dict) else None
    return kid if isinstance(kid, str) else None


class GoogleIdTokenVerifier:
    """Validate Google-issued OIDC ID tokens and return the verified claim set.

    Usage:
        verifier = GoogleIdTokenVerifier(client_id=settings.google_client_id)
        identity = verifier.verify(id_token)   # raises FederationError
    """

    def __init__(
        self,
        client_id: str,
        *,
        allow_any_audience: bool = False,
        jwks_url: str = GOOGLE_JWKS_URL,
        jwks_cache_seconds: int = 3600,
        jwks_refetch_seconds: int = 60,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.allow_any_audience = allow_any_audience
        self.jwks_url = jwks_url
        self.jwks_cache_seconds = jwks_cache_seconds
        self.jwks_refetch_seconds = jwks_refetch_seconds
        self.timeout = timeout
        self._jwks: dict | None = None
        self._jwks_fetched_at = 0.0
        self._lock = threading.Lock()

    def verify(self, id_token: str) -> FederatedIdentity:
        if not id_token:
            raise FederationError("empty id_token")

        claims_options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        if self.client_id:
            claims_options["aud"] = {"essential": True, "value": self.client_id}
        elif self.allow_any_audience:
            logger.warning("GOOGLE_CLIENT_ID not set -- ID token audience is not pinned")
        else:
            # [H3]
            raise FederationError("GOOGLE_CLIENT_ID is not configured; Google sign-in is disabled")

        key_set = JsonWebKey.import_key_set(self._get_jwks(_unverified_kid(id_token)))
        try:
            claims = _jwt.decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except (JoseError, ValueError, KeyError) as exc:
            # ValueError: malformed token or kid not present in the key set.
            # KeyError: header kid matched a key that does not fit the algorithm.
            raise FederationError(f"Google ID token rejected: {exc!r}") from exc

        # [H1] only accept emails the provider vouches for
        if claims.get("email_verified") not in (True, "true"):
            raise FederationError("Google ID token: email is not verified")
        email = claims.get("email")
        if not email:
            raise FederationError("Google ID token: missing email claim")

        return FederatedIdentity(
            email=email,
            name=claims.get("name"),
            picture=claims.get("picture"),
            subject=claims.get("sub"),
        )

    def _get_jwks(self, kid: str | None = None) -> dict:
        """Return the cached key set, refetching when it is stale or lacks kid."""
        with self._lock:
            age = time.monotonic() - self._jwks_fetched_at
            if self._jwks is None or age >= self.jwks_cache_seconds:
                self._fetch_jwks()
            elif kid and kid not in self._cached_kids() and age >= self.jwks_refetch_seconds:
                logger.info("Unknown JWKS kid=%s; refetching Google keys", kid)
                self._fetch_jwks()
            return self._jwks

    def _cached_kids(self) -> set:
        return {key.get("kid") for key in self._jwks.get("keys", [])}

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.jwks_url, timeout=self.timeout)
        resp.raise_for_status()
        self._jwks = resp.json()
        self._jwks_fetched_at = time.monotonic()
        logger.info("Fetched Google JWKS (%d keys)", len(self._jwks.get("keys", [])))
