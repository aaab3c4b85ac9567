"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for credgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the signing-secret policy: dev mode generates
      secrets with a warning, production mode refuses to start without them.

Security notes:
  Signing secrets shorter than 32 chars are rejected outright.

  In production mode (DEBUG not set or false), a missing signing secret
     is a hard startup failure.

  Access and refresh tokens must be signed with different secrets, so an
     access token can never be replayed as a refresh token or vice versa.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credgate.db'}"


def now_iso() -> str:
    """Current UTC time as ISO 8601 with fixed microsecond precision.

    Fixed precision keeps lexical order equal to chronological order, which
    the store relies on when comparing expiry columns in SQL.
    """
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


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
    database_url: str = _DEFAULT_DB_URL
    # Comma-separated (e.g. ALLOWED_HOSTS=localhost,auth.example.com)
    allowed_hosts: str = "localhost,127.0.0.1"
    cors_origins: str = "http://localhost:5173"

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    secure_cookies: bool = False
    cookie_samesite: str = "lax"

    # ------------------------------------------------------------------
    # One-time codes and reset links
    # ------------------------------------------------------------------

    login_code_expire_seconds: int = 5 * 60
    reset_token_expire_seconds: int = 15 * 60
    email_verification_link: str = "http://localhost:5173/verify-email"
    reset_password_link: str = "http://localhost:5173/reset-password"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    auth_rate_limit: str = "10/minute"
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # SMTP (empty host means mail delivery is disabled)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_from_name: str = "credgate"
    smtp_start_tls: bool = True

    # ------------------------------------------------------------------
    # Profile image storage (S3; empty bucket means uploads are disabled)
    # ------------------------------------------------------------------

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "us-east-1"
    s3_bucket: str = ""
    # Optional CDN/public prefix; falls back to the bucket's virtual-host URL.
    s3_public_base_url: str = ""

    @property
    def allowed_hosts_list(self) -> list[str]:
        return [x.strip() for x in self.allowed_hosts.split(",") if x.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        return [x.strip() for x in self.cors_origins.split(",") if x.strip()]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject a
            configuration where both secrets are the same value.
        """
        for field in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, field)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", field.upper())
            if len(getattr(self, field)) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
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
