import logging
import os

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Named sliding-window presets: action -> (limit, window_seconds)
RATE_LIMIT_PRESETS: dict[str, tuple[int, int]] = {
    "login": (5, 15 * 60),  # 5 attempts per 15 minutes
    "register": (3, 60 * 60),
    "password_reset": (3, 60 * 60),
    "email_verification": (5, 60 * 60),
    "password_change": (10, 60 * 60),
    "api": (50, 15 * 60),
    "suspicious_activity": (10, 5 * 60),
}

INSECURE_DEFAULTS = [
    "dev-admin-key-change-in-prod",
    "secret",
    "changeme",
    "admin",
]


class Settings(BaseSettings):
    # App
    APP_NAME: str = "authguard"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Shared cache store
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_TIMEOUT_SECONDS: float = 5.0

    # Durable security event store
    DATABASE_URL: str = "sqlite+aiosqlite:///./authguard.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_TIMEOUT_SECONDS: float = 5.0

    # Cache TTLs (seconds)
    LOGIN_ATTEMPTS_TTL: int = 900  # 15 minutes
    ACCOUNT_LOCKOUT_TTL: int = 1800  # default lock length, 30 minutes
    SECURITY_EVENTS_TTL: int = 86400  # 24 hours
    SECURITY_EVENTS_MAX: int = 100
    TOKEN_TTL: int = 3600  # default one-time token lifetime
    FEATURE_FLAG_CACHE_TTL: int = 300

    # Lockout policy
    MAX_FAILED_ATTEMPTS: int = 5
    BASE_LOCKOUT_MINUTES: int = 30
    MAX_LOCKOUT_MINUTES: int = 24 * 60
    LOCKOUT_BACKOFF_MULTIPLIER: int = 2

    # Run prune+insert+count as one server-side script
    RATE_LIMIT_USE_SCRIPT: bool = True

    # Admin API
    ADMIN_API_KEY: str = "dev-admin-key-change-in-prod"  # In production, ALWAYS override via env var

    @field_validator("ADMIN_API_KEY")
    @classmethod
    def validate_admin_key(cls, v: str, info) -> str:
        """Reject empty or well-known admin keys outside of DEBUG mode."""
        if not v or v.strip() == "":
            raise ValueError(
                f"{info.field_name} must be set in environment variables. "
                f"Generate a secure random key using: openssl rand -base64 32"
            )

        if v.lower() in INSECURE_DEFAULTS:
            debug_mode = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")
            if not debug_mode and info.data.get("DEBUG") is not True:
                raise ValueError(
                    f"{info.field_name} is using an insecure default value. "
                    f"Generate a secure key using: openssl rand -base64 32"
                )

            logger.warning(
                f"{info.field_name} is using an insecure default value in DEBUG mode. "
                f"This MUST be changed in production!"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    class Config:
        env_file = ".env"
        case_sensitive = True


def get_settings() -> Settings:
    """Build settings from the environment."""
    return Settings()
