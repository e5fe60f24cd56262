"""
core/config.py -- Environment-driven settings for the campus auth service.

Every environment variable the service reads is a field on Settings. Other
modules never touch os.environ; they receive plain values from whoever
builds them. Collaborators are built from Settings in the api/main.py
lifespan and the main.py CLI. The rate limiter reads its two fields at
import time.

get_settings() is memoised with lru_cache, so the environment and .env file
are parsed once per process.

Security notes:
  [M6] Keys under 32 characters are refused. HS256 tokens are only as
       strong as the shared secret.
  [M7] Outside DEBUG a missing SECRET_KEY stops startup. Silently using a
       random key would log every user out on each restart.

Layer rule: core/ may not import from api/, auth/ or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("campus.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'campus_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `salt_rounds` from SALT_ROUNDS.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token lifetimes (seconds)
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 45 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    verification_token_ttl_seconds: int = 60 * 60
    completion_token_ttl_seconds: int = 60 * 60

    # bcrypt cost factor. 10 matches the mobile client's expected login latency.
    salt_rounds: int = 10

    # ------------------------------------------------------------------
    # Links embedded in verification emails and redirects
    # ------------------------------------------------------------------

    app_url: str = "http://localhost:8000"
    frontend_url_complete_signup: str = "http://localhost:3000/signup/complete"
    mobile_url_complete_signup: str = "campus://signup/complete"

    # ------------------------------------------------------------------
    # Federation (Google ID tokens). Outside DEBUG an empty client id makes
    # the verifier refuse every token; in DEBUG the audience goes unpinned.
    # ------------------------------------------------------------------

    google_client_id: str = ""

    # ------------------------------------------------------------------
    # Outbound notifications (optional -- empty host/url means log only)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_from_name: str = "Campus Logistics"

    push_gateway_url: str = ""
    push_api_key: str = ""

    # ------------------------------------------------------------------
    # Rate limiting and housekeeping
    # ------------------------------------------------------------------

    signin_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the signing-key policy [M6][M7].

        DEBUG=true with no key: a random key is generated and a warning is
        logged. Every access, refresh and completion token dies on restart.

        Anything else with no key: startup fails.

        A configured key shorter than 32 characters always fails.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Put a random value of at least 32 characters in the environment or .env."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated a throwaway key (tokens will not survive a restart)")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long.")
        return self

    @field_validator("salt_rounds")
    @classmethod
    def validate_salt_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("SALT_ROUNDS must be within bcrypt's cost range 4..31.")
        return value


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first call and return the same instance afterwards.

    Tests that change environment variables must call get_settings.cache_clear().
    """
    return Settings()
