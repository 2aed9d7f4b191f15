"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call
os.getenv() directly -- import get_settings() instead. The auth core never
sees Settings at all: Settings.auth_config() builds the immutable AuthConfig
that is passed into the codec, issuer, store and authenticator.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance afterwards (FastAPI's documented
      pattern for settings).

  BaseSettings (pydantic-settings): values come from environment variables
      and an optional .env file. Field names map to env var names
      (secret_key -> SECRET_KEY).

  @model_validator(mode="after"): enforces the SECRET_KEY policy once all
      fields are resolved.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright; HMAC signing relies
  on key entropy.

  Outside DEBUG mode a missing SECRET_KEY raises SecretMisconfigured and the
  process refuses to start. It never falls back to a built-in key.

Layer rule: core/ may import auth.models / auth.errors (plain data) but
nothing from api/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from auth.errors import SecretMisconfigured
from auth.models import MIN_SECRET_LENGTH, AuthConfig

logger = logging.getLogger("tokengate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Everything except SECRET_KEY has a default so Settings() works in tests
    with DEBUG=true. Environment variable names are the uppercased field
    names, e.g. ACCESS_TOKEN_TTL_SECONDS.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = "sqlite:///tokengate_auth.db"
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    access_token_ttl_seconds: int = 24 * 60 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    token_issuer: str = "OEM-EV-Warranty-System"
    token_audience: str = "warranty-api"
    auth_header_name: str = "Authorization"
    auth_scheme: str = "Bearer"

    # "store": opaque, revocable refresh tokens in the database.
    # "signed": stateless signed refresh tokens (no revocation).
    refresh_strategy: Literal["store", "signed"] = "store"
    rotate_refresh_tokens: bool = True
    purge_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Login policy
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    lockout_seconds: int = 15 * 60
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive a restart -- fine for local work.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise SecretMisconfigured(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < MIN_SECRET_LENGTH:
            raise SecretMisconfigured(f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters.")
        return self

    def auth_config(self) -> AuthConfig:
        """Build the immutable config struct handed to the auth core."""
        return AuthConfig(
            secret=self.secret_key,
            issuer=self.token_issuer,
            audience=self.token_audience,
            algorithm=self.jwt_algorithm,
            access_ttl=timedelta(seconds=self.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=self.refresh_token_ttl_seconds),
            header_name=self.auth_header_name,
            scheme=self.auth_scheme,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
