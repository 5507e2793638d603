"""
Application Configuration.

Pydantic Settings model for the realm login client.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Identity provider ---
    IDP_BASE_URL: str = "http://localhost:8080/api"
    HTTP_TIMEOUT_S: float = 10.0

    # --- Login flow ---
    OTP_CODE_LENGTH: int = 6
    DEFAULT_SMS_COOLDOWN_S: int = 30
    COOLDOWN_TICK_S: float = 1.0

    # --- Token persistence ---
    # Empty means tokens live in memory only for the process lifetime.
    TOKEN_STORE_PATH: str = ""

    # --- Logging ---
    LOG_FILE: str = "realm_login.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_values(self) -> "AppConfig":
        """Reject unusable flow settings and warn about a missing ``.env``.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so the warning tells operators which provider URL is in effect.
        """
        if self.OTP_CODE_LENGTH <= 0:
            raise ValueError("OTP_CODE_LENGTH must be positive")
        if self.COOLDOWN_TICK_S <= 0:
            raise ValueError("COOLDOWN_TICK_S must be positive")
        if self.DEFAULT_SMS_COOLDOWN_S < 0:
            raise ValueError("DEFAULT_SMS_COOLDOWN_S must not be negative")

        _log = logging.getLogger("realm_login.config")
        if not Path(".env").exists():
            _log.warning(
                "No .env file found; identity provider URL is %s.",
                self.IDP_BASE_URL,
            )
        return self

    @property
    def token_store_path(self) -> Optional[Path]:
        """Path of the encrypted token file, or ``None`` for in-memory storage."""
        if not self.TOKEN_STORE_PATH:
            return None
        return Path(self.TOKEN_STORE_PATH).expanduser()


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the first initialisation is
    thread-safe without taking the lock on every call.  Prefer
    constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
