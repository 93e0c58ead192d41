"""
core/config.py -- Settings for the accounts service (pydantic-settings).

Every environment read happens here. Other modules call get_settings() and
never touch os.environ themselves; the values they need (signing secret,
TTLs, limiter quotas, webhook URL) are passed into the objects that use them
when api/main.py wires the service graph.

  get_settings() is lru_cached, so Settings is built once per process.
  Tests that change the environment call get_settings.cache_clear().

  Values come from environment variables (field name upper-cased, e.g.
  token_expire_seconds -> TOKEN_EXPIRE_SECONDS) or an optional .env file.

SECRET_KEY policy (enforced by the validator below):
  DEBUG=true and no key  -> a random key is generated and a warning logged;
                            issued tokens die with the process.
  DEBUG unset and no key -> startup fails.
  Key under 32 chars     -> startup fails in either mode.

Changing SECRET_KEY invalidates every outstanding bearer token. Their session
rows linger until the expiry sweep deletes them.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("outr.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default except the secret in production."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False
    # "" means unset; validate_secret_key() replaces or rejects it.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_DATA_DIR / 'outr.db'}"
    # SQLite busy timeout / pool checkout bound. Exceeded -> TransientStoreError.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens and sessions (one TTL for both)
    # ------------------------------------------------------------------

    token_expire_seconds: int = 7 * 24 * 60 * 60
    session_sweep_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting -- shared by the inbound API gate and the webhook gate
    # ------------------------------------------------------------------

    rate_limit_max_per_window: int = 45
    rate_limit_window_seconds: int = 60
    rate_limit_cooldown_seconds: int = 180
    rate_limit_sweep_seconds: int = 60

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    webhook_url: str = ""  # empty disables delivery
    webhook_timeout_seconds: float = 5.0

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000"]

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in a throwaway key for local development, refuse weak or missing keys otherwise."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Set it in the environment or in .env."
                )
            self.secret_key = secrets.token_hex(_MIN_SECRET_LENGTH)
            logger.warning("SECRET_KEY not set; generated a temporary key. Tokens will not survive a restart.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
