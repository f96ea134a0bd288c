"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for pcompass-auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. auth_token_secret -> AUTH_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets. A missing secret is the only condition allowed to abort startup.

Security notes:
  [S1] AUTH_TOKEN_SECRET and PRO_TOKEN_SECRET are independent. A leaked Auth
       secret must not mint Pro tokens and vice versa, so identical values are
       rejected.

  [S2] In production mode (DEBUG not set or false), a missing secret is a hard
       startup failure. Dev mode generates a random one with a warning.

  [S3] Secrets shorter than 32 chars are rejected outright.

Components never read Settings on their own. The FastAPI lifespan pulls values
from get_settings() and injects them into the verifier, guard and limiter.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pcompass.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pcompass.db'}"

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (as long as DEBUG=true or both
    secrets are supplied).
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
    database_url: str = _DEFAULT_DB_URL
    # Applied to connects, SQLite lock waits and PostgreSQL statements alike.
    # A timeout is handled exactly like any other datastore error (deny).
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    auth_token_secret: str = ""
    pro_token_secret: str = ""

    token_max_age_seconds: int = 14400
    token_max_skew_seconds: int = 300
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]
    max_request_bytes: int = 1_000_000

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # In-process, per IP (slowapi). Guards the credential endpoints.
    signin_rate_limit: str = "10/hour"

    # Shared, DB-backed. Requests allowed per rate_limit_window_seconds.
    rate_limit_window_seconds: int = 3600
    verify_pro_rate_limit: int = 30
    check_feature_rate_limit: int = 20
    start_trial_rate_limit: int = 10
    rate_limit_retention_seconds: int = 48 * 3600
    rate_limit_prune_probability: float = 0.02

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    trial_length_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [S1][S2][S3].

        Dev mode (DEBUG=true): each missing secret is replaced with a random
            one. Tokens will not survive a restart -- acceptable locally.

        Production mode: refuse to start when either secret is missing.
        """
        for field in ("auth_token_secret", "pro_token_secret"):
            value = getattr(self, field)
            if not value:
                if self.debug:
                    setattr(self, field, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Issued tokens will not persist across restarts.",
                        field.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            elif len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{field.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.auth_token_secret == self.pro_token_secret:
            raise ValueError("AUTH_TOKEN_SECRET and PRO_TOKEN_SECRET must be different values.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
