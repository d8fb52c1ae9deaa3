"""
Runtime configuration for TRUSTGATE.

All settings come from environment variables (or Docker secrets for
sensitive values) and are read once per process.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from .secrets import get_postgres_password, get_secret, get_totp_encryption_key


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _database_url() -> str:
    url = get_secret("DATABASE_URL")
    if url:
        return url
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "trustgate")
    user = os.getenv("POSTGRES_USER", "trustgate_user")
    return f"postgresql://{user}:{get_postgres_password()}@{host}:{port}/{db}"


@dataclass(frozen=True)
class Settings:
    """Process-wide settings snapshot."""
    app_env: str = "development"
    app_name: str = "TrustGate"
    app_version: str = "0.1.0"
    database_url: str = ""
    redis_enabled: bool = True
    session_hours: int = 24
    account_window_seconds: int = 15 * 60
    account_max_attempts: int = 5
    origin_window_seconds: int = 60 * 60
    origin_max_attempts: int = 200
    login_challenge_ttl_seconds: int = 5 * 60
    # Route a login to completion when the second-factor lookup itself fails
    two_factor_fail_open: bool = True
    totp_encryption_key: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment (cached)."""
    origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    return Settings(
        app_env=os.getenv("APP_ENV", "development").lower(),
        app_name=os.getenv("APP_NAME", "TrustGate"),
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        database_url=_database_url(),
        redis_enabled=_env_bool("REDIS_ENABLED", True),
        session_hours=_env_int("SESSION_HOURS", 24),
        account_window_seconds=_env_int("THROTTLE_ACCOUNT_WINDOW_SECONDS", 15 * 60),
        account_max_attempts=_env_int("THROTTLE_ACCOUNT_MAX", 5),
        origin_window_seconds=_env_int("THROTTLE_ORIGIN_WINDOW_SECONDS", 60 * 60),
        origin_max_attempts=_env_int("THROTTLE_ORIGIN_MAX", 200),
        login_challenge_ttl_seconds=_env_int("LOGIN_CHALLENGE_TTL_SECONDS", 5 * 60),
        two_factor_fail_open=_env_bool("TWO_FACTOR_FAIL_OPEN", True),
        totp_encryption_key=get_totp_encryption_key(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
