"""
core/config.py -- FileGate settings, read once from the environment.

Every tunable lives on Settings; other modules call get_settings() and never
read os.environ themselves. Values come from environment variables or a
.env file beside the process (RESOURCE_ROOT, DATABASE_URL, SECRET_KEY, ...),
coerced and validated by pydantic-settings.

get_settings() is memoized with lru_cache, so the first call fixes the
configuration for the life of the process. Tests that need other values set
the environment before the first import, or patch attributes on the cached
instance.

SECRET_KEY policy (enforced by validate_secret_key):
  DEBUG=true   -- a missing key is generated per process, with a warning.
  otherwise    -- a missing key is a startup error.
  always       -- keys shorter than 32 characters are refused.

Security notes:
  SECRET_KEY signs session JWTs only. The download-token signing secret is a
  separate value owned by auth/signing_key.py and persisted in the settings table,
  so rotating the session key does not invalidate outstanding download links.

  The download token TTL is deliberately NOT a setting. It lives in
  auth/tokens.py as DOWNLOAD_TOKEN_TTL_SECONDS.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, gateway/, or resources/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("filegate.config")


class Settings(BaseSettings):
    """FileGate configuration. Every field has a default except SECRET_KEY outside DEBUG."""

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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Every servable file must live under this directory. Stored relative
    # paths are joined onto it and the result is confined to it.
    resource_root: Path = Path("storage")
    database_url: str = f"sqlite:///{Path(__file__).parent.parent / 'filegate.db'}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["files.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    # Prefix for links handed out by POST /api/v1/downloads/links.
    public_base_url: str = "http://localhost:8000"
    stream_chunk_size: int = Field(default=64 * 1024, ge=1024)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY according to DEBUG."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is not set. FileGate refuses to sign sessions with an empty key; "
                    "export SECRET_KEY (32+ characters) or set DEBUG=true for a throwaway key."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG is on and SECRET_KEY is unset; generated a per-process session key.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY is too short; use at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first use and hand back the same instance afterwards."""
    return Settings()
