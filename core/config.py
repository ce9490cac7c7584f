"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuditGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning; production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. The auditor token
       fingerprint (HMAC-SHA256) and staff JWT signing both rely on key
       entropy -- a short key weakens both.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would orphan every
       issued auditor token on restart, because stored fingerprints are keyed
       with it.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
access/, or audit/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("auditgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Empty string means the package-local SQLite file (see access/store.py).
    database_url: str = ""

    # ------------------------------------------------------------------
    # Staff identity (JWTs minted by the surrounding identity system)
    # ------------------------------------------------------------------

    staff_token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Auditor tokens
    # ------------------------------------------------------------------

    # Upper bound on expires_at at issuance, counted from now.
    token_max_lifetime_days: int = 90
    # Background expiry sweep cadence. 0 disables the loop; the cleanup route
    # and the CLI sweep command keep working either way.
    sweep_interval_seconds: int = 3600
    # Only enable behind a proxy that overwrites X-Forwarded-For.
    trust_forwarded_for: bool = False
    # Auditor-facing page where the secret is entered. Served by the host
    # application, not by this API; returned with each issued token when set.
    auditor_access_url: Optional[str] = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens stop validating after a restart -- acceptable for
            local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Auditor tokens and staff sessions will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.token_max_lifetime_days < 1:
            raise ValueError("TOKEN_MAX_LIFETIME_DAYS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
