"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Forge happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation of the signing
      secrets once every field is resolved.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure. In debug mode a random one is generated.

  [T1] Access and refresh tokens must be signed with different secrets so a
       refresh token can never be replayed as an access token (and vice versa).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("forge.config")

_SECRET_FIELDS = ("access_token_secret", "refresh_token_secret", "session_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Rate-limit quotas are expressed as
    a request ceiling plus a window length in seconds.
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
    database_url: str = "sqlite:///forge.db"
    frontend_url: str = "http://localhost:3000"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured"; the validator either
    # generates a dev secret or raises.
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    # Signs the Starlette session cookie that carries the OAuth state.
    session_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    default_role: str = "user"
    # Roles a caller may pick for themselves at POST /auth/register.
    registration_roles: list[str] = ["user"]

    # ------------------------------------------------------------------
    # OAuth providers (empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Any URI understood by limits.storage.storage_from_string(), e.g.
    # "redis://localhost:6379" for a counter store shared across processes.
    rate_limit_storage_uri: str = "memory://"
    rate_limit_allowlist: list[str] = []

    ip_rate_limit: int = 1000
    ip_rate_window: int = 10 * 60
    login_rate_limit: int = 5
    login_rate_window: int = 15 * 60
    registration_rate_limit: int = 5
    registration_rate_window: int = 15 * 60
    refresh_rate_limit: int = 3
    refresh_rate_window: int = 15 * 60
    oauth_login_rate_limit: int = 5
    oauth_login_rate_window: int = 15 * 60
    oauth_link_rate_limit: int = 5
    oauth_link_rate_window: int = 15 * 60
    oauth_unlink_rate_limit: int = 5
    oauth_unlink_rate_window: int = 15 * 60

    admin_rate_limit: int = 5000
    admin_rate_window: int = 3600
    user_rate_limit: int = 1000
    user_rate_window: int = 3600
    default_rate_limit: int = 500
    default_rate_window: int = 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6][M7][T1].

        Dev mode (DEBUG=true): auto-generate each missing secret with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            elif len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
