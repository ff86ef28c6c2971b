"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ScholarGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, receive a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      process entry points (api/main.py lifespan, main.py CLI) call it; the
      services under auth/ receive the instance explicitly so tests can inject
      their own secrets per run.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_secret_key -> ACCESS_SECRET_KEY).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets once every field has been resolved.

Security notes:
  [S1] Access and refresh assertions are signed with two different secrets.
       A refresh token presented as an access token (or the reverse) fails
       signature verification instead of being accepted.

  [S2] Secrets shorter than 32 chars are rejected outright.

  [S3] In production mode (DEBUG not set or false), a missing secret is a hard
       startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
notify/, or storage/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("scholargate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'scholargate.db'}"
_DEFAULT_DOCUMENT_DIR = str(Path(__file__).parent.parent / "documents")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces the signing-secret rules at startup.
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
    access_secret_key: str = ""
    refresh_secret_key: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 86400
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/api/v1/auth"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Credentials and single-use tokens
    # ------------------------------------------------------------------

    # 12 rounds is roughly 100-250ms per hash on current server hardware.
    bcrypt_rounds: int = 12
    verification_token_ttl_seconds: int = 86400
    recovery_token_ttl_seconds: int = 3600
    token_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Notification delivery
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    mail_backend: Literal["log", "smtp", "http"] = "log"
    mail_from: str = "no-reply@scholargate.local"
    mail_from_name: str = "ScholarGate"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_api_url: str = ""
    mail_api_key: str = ""
    notification_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Supporting documents (university registration)
    # ------------------------------------------------------------------

    document_storage_dir: str = _DEFAULT_DOCUMENT_DIR
    document_base_url: str = "http://localhost:8000/documents"
    max_document_bytes: int = 10 * 1024 * 1024
    max_documents: int = 10

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [S1][S2][S3].

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and refuse to
            run with the same value for both assertion kinds.
        """
        for field_name in ("access_secret_key", "refresh_secret_key"):
            value = getattr(self, field_name)
            env_name = field_name.upper()
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        env_name,
                    )
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            elif len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        if self.access_secret_key == self.refresh_secret_key:
            raise ValueError("ACCESS_SECRET_KEY and REFRESH_SECRET_KEY must be different.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: construct Settings(...) directly with test secrets instead, or
    call get_settings.cache_clear() after changing environment variables.
    """
    return Settings()
