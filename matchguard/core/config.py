"""Application configuration for the login defense service.

Uses Pydantic BaseSettings for declarative environment variable binding.
Thresholds for the brute-force guard, session monitor and rate limiter
live here so they can be tuned per deployment without code changes.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

__all__ = ["Settings", "settings", "ENV_FILE_PATH", "ENV_FILE_LOADED"]

# Resolved .env path used at startup
ENV_FILE_PATH: Optional[Path] = None
ENV_FILE_LOADED: bool = False

DEFAULT_CLIENT_IP_HEADERS = (
    "CF-Connecting-IP,Client-IP,X-Forwarded-For,X-Forwarded,Forwarded-For,Forwarded"
)


def _find_env_file() -> Optional[Path]:
    """Find .env file from multiple possible locations."""
    global ENV_FILE_PATH, ENV_FILE_LOADED
    current_file = Path(__file__).resolve()
    possible_paths = [
        current_file.parent.parent / '.env',
        current_file.parent.parent.parent / '.env',
        Path.cwd() / '.env',
    ]

    for env_path in possible_paths:
        if env_path.exists():
            ENV_FILE_PATH = env_path
            ENV_FILE_LOADED = True
            logger.info(f"Found .env at: {env_path}")
            return env_path

    logger.debug("No .env file found - using environment variables and defaults")
    return None


_env_path = _find_env_file()
if _env_path:
    load_dotenv(dotenv_path=_env_path, override=False)


def _parse_comma_list(value: str) -> list[str]:
    """Parse a comma-separated string into a list of stripped, non-empty strings."""
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_rate_limit_overrides(raw: str) -> dict[str, tuple[int, int]]:
    """Parse RATE_LIMIT_OVERRIDES JSON: {"action": [limit, window_seconds]}."""
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed RATE_LIMIT_OVERRIDES: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring RATE_LIMIT_OVERRIDES: expected a JSON object")
        return {}

    overrides: dict[str, tuple[int, int]] = {}
    for action, pair in data.items():
        try:
            limit, window = int(pair[0]), int(pair[1])
        except (TypeError, ValueError, IndexError, KeyError):
            logger.warning(f"Ignoring rate limit override for {action!r}: {pair!r}")
            continue
        overrides[str(action)] = (limit, window)
    return overrides


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Application settings ---
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    DATA_DIR: str = "/app/data" if os.path.exists("/app") else "data"
    SITE_NAME: str = "MatchGuard"
    CORS_ORIGINS: Any = "*"  # str from env, overwritten to list[str] by validator
    CORS_ALLOW_CREDENTIALS: bool = False

    # --- Storage backends ---
    CACHE_BACKEND: str = "memory"  # memory | redis
    DURABLE_BACKEND: str = "memory"  # memory | sql | redis
    REDIS_URL: str = ""
    REDIS_KEY_PREFIX: str = "matchguard:"
    DATABASE_URL: Optional[str] = None  # Computed in validator if not set

    # --- Client identity ---
    CLIENT_IP_HEADERS: Any = DEFAULT_CLIENT_IP_HEADERS  # str from env, overwritten to list[str]

    # --- Brute-force guard ---
    BRUTE_FORCE_MAX_ATTEMPTS: int = 5
    BRUTE_FORCE_ATTEMPT_WINDOW: int = 900
    BRUTE_FORCE_ATTEMPT_RETENTION: int = 3600
    LOCKOUT_DURATION: int = 1800
    MAX_LOCKOUTS: int = 3
    LOCKOUT_COUNT_WINDOW: int = 86400
    BAN_DURATION: int = 86400

    # --- Session integrity ---
    SESSION_TIMEOUT: int = 1800
    MAX_SESSION_AGE: int = 86400

    # --- Rate limiter ---
    RATE_LIMIT_OVERRIDES: str = ""

    # --- Admin notifications ---
    ADMIN_EMAIL: str = ""
    SMTP_HOST: str = ""
    SMTP_PORT: int = 465
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_USE_SSL: bool = True
    NOTIFICATION_WORKERS: int = 2

    # --- Authentication ---
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 60 * 24
    ADMIN_PASSWORD: str = ""

    # --- Computed fields (set by model_validator) ---
    _rate_limit_overrides: dict[str, tuple[int, int]] = {}

    @model_validator(mode="after")
    def _resolve_computed_fields(self) -> "Settings":
        """Resolve comma-separated strings and derived defaults after field loading."""
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"sqlite:///{self.DATA_DIR}/matchguard.db"

        if isinstance(self.CORS_ORIGINS, str):
            self.CORS_ORIGINS = _parse_comma_list(self.CORS_ORIGINS)
        # Credentials cannot be combined with a wildcard origin
        if "*" in self.CORS_ORIGINS:
            self.CORS_ALLOW_CREDENTIALS = False

        if isinstance(self.CLIENT_IP_HEADERS, str):
            self.CLIENT_IP_HEADERS = _parse_comma_list(self.CLIENT_IP_HEADERS)

        self.CACHE_BACKEND = self.CACHE_BACKEND.lower().strip()
        self.DURABLE_BACKEND = self.DURABLE_BACKEND.lower().strip()
        self._rate_limit_overrides = _parse_rate_limit_overrides(self.RATE_LIMIT_OVERRIDES)
        return self

    @property
    def rate_limit_overrides(self) -> dict[str, tuple[int, int]]:
        return dict(self._rate_limit_overrides)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.ADMIN_EMAIL)

    def validate_security(self) -> tuple[list[str], list[str]]:
        """Validate security-critical configuration.

        Returns:
            Tuple of (warnings, errors) lists
        """
        warnings: list[str] = []
        errors: list[str] = []

        thresholds = {
            "BRUTE_FORCE_MAX_ATTEMPTS": self.BRUTE_FORCE_MAX_ATTEMPTS,
            "BRUTE_FORCE_ATTEMPT_WINDOW": self.BRUTE_FORCE_ATTEMPT_WINDOW,
            "LOCKOUT_DURATION": self.LOCKOUT_DURATION,
            "MAX_LOCKOUTS": self.MAX_LOCKOUTS,
            "BAN_DURATION": self.BAN_DURATION,
            "SESSION_TIMEOUT": self.SESSION_TIMEOUT,
            "MAX_SESSION_AGE": self.MAX_SESSION_AGE,
        }
        for name, value in thresholds.items():
            if value <= 0:
                errors.append(f"{name} must be a positive integer, got {value}")

        if self.BRUTE_FORCE_ATTEMPT_RETENTION < self.BRUTE_FORCE_ATTEMPT_WINDOW:
            warnings.append(
                "BRUTE_FORCE_ATTEMPT_RETENTION is shorter than BRUTE_FORCE_ATTEMPT_WINDOW; "
                "failed attempts will be pruned before they stop counting."
            )

        if "redis" in (self.CACHE_BACKEND, self.DURABLE_BACKEND) and not self.REDIS_URL:
            warnings.append("A redis backend is selected but REDIS_URL is not set; memory will be used.")

        if not self.ADMIN_EMAIL:
            warnings.append("ADMIN_EMAIL not set. Ban and anomaly notifications will only be logged.")

        if not self.DEBUG:
            if not self.JWT_SECRET_KEY or len(self.JWT_SECRET_KEY) < 32:
                errors.append(
                    "JWT_SECRET_KEY must be at least 32 characters in production. "
                    'Generate with: python -c "import secrets; print(secrets.token_urlsafe(32))"'
                )
            if not self.ADMIN_PASSWORD:
                errors.append("ADMIN_PASSWORD must be set in production.")

        for warning in warnings:
            logger.warning(f"SECURITY CONFIG: {warning}")
        for error in errors:
            logger.error(f"SECURITY CONFIG ERROR: {error}")

        return warnings, errors


settings = Settings()
