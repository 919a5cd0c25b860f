"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Keyward happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Token lifetimes are range-checked here so a
      misconfigured deployment fails at startup instead of minting tokens that
      live for a year.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  HMAC used for refresh/state/challenge token hashes both rely on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. A random per-process key would silently log everyone out on
  every restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
admin/, or client/.
"""

import logging
import secrets
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyward.config")


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
    database_url: str = "sqlite:///keyward.db"
    # SQLite busy timeout. Bounds how long a refresh-token redemption can wait
    # on a competing writer before failing closed.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Access / refresh tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "keyward"
    jwt_audience: str = "keyward-clients"
    access_token_minutes: int = 10
    refresh_persistent_days: int = 7
    refresh_session_hours: int = 24
    # A replayed (already used) refresh token is a theft signal: revoke every
    # session of the owner, including the one that won the rotation. A replay
    # arriving within the grace window of the redemption is a concurrent
    # refresh that lost the race and only gets token_already_used.
    refresh_reuse_revokes_sessions: bool = True
    refresh_reuse_grace_seconds: int = 5

    # ------------------------------------------------------------------
    # Credential checks and two-factor
    # ------------------------------------------------------------------

    lockout_max_attempts: int = 5
    lockout_minutes: int = 15
    two_factor_challenge_minutes: int = 5
    two_factor_max_attempts: int = 5
    totp_issuer: str = "Keyward"
    password_reset_hours: int = 24
    frontend_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # External providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    allowed_redirect_uris: list[str] = Field(default_factory=list)
    external_state_minutes: int = 10
    provider_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    bootstrap_superadmin_email: str = ""
    bootstrap_superadmin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Range-check every token lifetime.

        The session (non-remember-me) refresh lifetime may never outlive the
        persistent one; otherwise ticking "remember me" would shorten a session.
        """
        if not 1 <= self.access_token_minutes <= 120:
            raise ValueError("ACCESS_TOKEN_MINUTES must be between 1 and 120.")
        if not 1 <= self.refresh_persistent_days <= 365:
            raise ValueError("REFRESH_PERSISTENT_DAYS must be between 1 and 365.")
        if not 1 <= self.refresh_session_hours <= 30 * 24:
            raise ValueError("REFRESH_SESSION_HOURS must be between 1 and 720.")
        if self.refresh_session_hours > self.refresh_persistent_days * 24:
            raise ValueError("REFRESH_SESSION_HOURS must not exceed REFRESH_PERSISTENT_DAYS.")
        if not 0 <= self.refresh_reuse_grace_seconds <= 60:
            raise ValueError("REFRESH_REUSE_GRACE_SECONDS must be between 0 and 60.")
        if not 1 <= self.external_state_minutes <= 30:
            raise ValueError("EXTERNAL_STATE_MINUTES must be between 1 and 30.")
        if not 1 <= self.two_factor_challenge_minutes <= 30:
            raise ValueError("TWO_FACTOR_CHALLENGE_MINUTES must be between 1 and 30.")
        if self.lockout_max_attempts < 1:
            raise ValueError("LOCKOUT_MAX_ATTEMPTS must be at least 1.")
        if self.provider_timeout_seconds <= 0 or self.store_timeout_seconds <= 0:
            raise ValueError("Timeouts must be positive.")
        return self

    @model_validator(mode="after")
    def validate_redirect_uris(self) -> "Settings":
        """Every allow-listed redirect URI must be absolute.

        Web apps use https:// URLs; mobile apps use custom schemes
        (myapp://callback). Both parse with a scheme and a netloc or path.
        """
        for uri in self.allowed_redirect_uris:
            parsed = urlparse(uri)
            if not parsed.scheme or not (parsed.netloc or parsed.path):
                raise ValueError(f"ALLOWED_REDIRECT_URIS contains an invalid URI: {uri!r}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests, which build their own Settings(...) and pass it in.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
