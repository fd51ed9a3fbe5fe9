"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionKeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Enforces the signing-key policy and the
      access/refresh lifetime ordering.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The same rule
       applies to every entry in SIGNING_KEYS.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. The process refuses to start without a signing key.

  [S1] access_token_expire_seconds must be strictly shorter than the refresh
       lifetime. The ratio bounds how long a revoked session can keep minting
       silent re-authentications.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionkeeper.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sessionkeeper_auth.db'}"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SigningKeySpec(BaseModel):
    """One entry of the SIGNING_KEYS list.

    SIGNING_KEYS is read as JSON, e.g.
        SIGNING_KEYS='[{"secret": "...", "valid_from": "2026-11-01T00:00:00Z"}]'
    A key whose valid_from is still in the future verifies but never signs,
    which lets operators stage the next key before cutting over.
    """

    secret: str
    valid_from: datetime = _EPOCH


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
    signing_keys: list[SigningKeySpec] = []
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 4 * 3600
    refresh_token_expire_days: int = 30
    refresh_token_retention_days: int = 7

    # ------------------------------------------------------------------
    # Lockout and rotation policy
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    refresh_reuse_grace_seconds: int = 5
    # Opt-in hardening: a replay outside the grace window also revokes every successor.
    revoke_chain_on_reuse: bool = False

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    refresh_cookie_name: str = "refresh_token"
    access_cookie_name: str = "access_token"
    secure_cookies: bool = False
    cookie_samesite: str = "lax"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    default_rate_limit: str = "200/minute"
    login_rate_limit: str = "15/15 minutes"
    refresh_rate_limit: str = "15/15 minutes"
    password_reset_rate_limit: str = "15/15 minutes"
    bulk_revoke_rate_limit: str = "10/minute"
    trust_proxy_headers: bool = False

    # ------------------------------------------------------------------
    # Password recovery and outbound mail
    # ------------------------------------------------------------------

    password_reset_expire_seconds: int = 3600
    web_base_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from: str = "noreply@localhost"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # Empty -> the edge relay calls the in-process session service.
    edge_api_url: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        for entry in self.signing_keys:
            if len(entry.secret) < 32:
                raise ValueError("Every SIGNING_KEYS secret must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Access tokens must expire materially sooner than refresh tokens [S1]."""
        if self.access_token_expire_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive.")
        if self.access_token_expire_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be shorter than the refresh token lifetime.")
        if self.lockout_threshold < 1 or self.lockout_window_seconds <= 0:
            raise ValueError("Lockout threshold and window must be positive.")
        return self

    @property
    def refresh_token_expire_seconds(self) -> int:
        return self.refresh_token_expire_days * 24 * 3600


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
