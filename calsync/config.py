import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

from .domain.calendar_sync.errors import ConfigurationError

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL


class Settings(BaseModel):
    """Process-wide configuration, built once at start-up and passed to each component"""

    model_config = ConfigDict(frozen=True)

    database_url: str

    # Connection pool (ignored for SQLite)
    db_pool_size: int = 20
    db_max_overflow: int = 30
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_log_slow_queries: bool = True
    db_slow_query_threshold: float = 1.0

    # Google Calendar OAuth credentials
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None
    google_calendar_api: str = GOOGLE_CALENDAR_API
    google_token_url: str = GOOGLE_TOKEN_URL

    # Push notification channels
    webhook_base_url: Optional[str] = None
    managed_calendar_ids: tuple[str, ...] = ()
    channel_ttl_seconds: int = 604800  # provider maximum: 7 days
    renewal_threshold_hours: int = 48

    # Provider calls
    provider_timeout_seconds: float = 15.0
    provider_max_attempts: int = 3
    provider_backoff_seconds: float = 1.0

    # Cost rollup
    hours_per_day: float = 8.0

    default_timezone: str = "UTC"
    allowed_origins: tuple[str, ...] = ("http://localhost:5173", "http://localhost:3000")

    # arq worker
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_ssl: bool = False

    @property
    def webhook_url(self) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url.rstrip('/')}/webhook/calendar"

    @property
    def provider_configured(self) -> bool:
        return all([self.google_client_id, self.google_client_secret, self.google_refresh_token])

    def require_provider(self) -> None:
        """Raise ConfigurationError unless provider credentials and callback URL are set"""
        missing = [
            name
            for name, value in (
                ("GOOGLE_CLIENT_ID", self.google_client_id),
                ("GOOGLE_CLIENT_SECRET", self.google_client_secret),
                ("GOOGLE_REFRESH_TOKEN", self.google_refresh_token),
                ("WEBHOOK_BASE_URL", self.webhook_base_url),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def _split_csv(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.lower() == "true"


def load_settings(environ: Optional[dict] = None) -> Settings:
    """
    Build Settings from the environment.

    When ``environ`` is omitted the project's .env file is loaded first and
    os.environ is read. Raises ConfigurationError on missing or malformed values.
    """
    if environ is None:
        load_dotenv(dotenv_path=env_path)
        environ = dict(os.environ)

    database_url = environ.get("DATABASE_URL")
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not set")

    try:
        values = {
            "database_url": database_url,
            "db_pool_size": int(environ.get("DB_POOL_SIZE", "20")),
            "db_max_overflow": int(environ.get("DB_MAX_OVERFLOW", "30")),
            "db_pool_timeout": int(environ.get("DB_POOL_TIMEOUT", "30")),
            "db_pool_recycle": int(environ.get("DB_POOL_RECYCLE", "300")),
            "db_log_slow_queries": _flag(environ.get("DB_LOG_SLOW_QUERIES"), True),
            "db_slow_query_threshold": float(environ.get("DB_SLOW_QUERY_THRESHOLD", "1.0")),
            "google_client_id": environ.get("GOOGLE_CLIENT_ID"),
            "google_client_secret": environ.get("GOOGLE_CLIENT_SECRET"),
            "google_refresh_token": environ.get("GOOGLE_REFRESH_TOKEN"),
            "google_calendar_api": environ.get("GOOGLE_CALENDAR_API", GOOGLE_CALENDAR_API),
            "webhook_base_url": environ.get("WEBHOOK_BASE_URL"),
            "managed_calendar_ids": _split_csv(environ.get("MANAGED_CALENDAR_IDS")),
            "channel_ttl_seconds": int(environ.get("CHANNEL_TTL_SECONDS", "604800")),
            "renewal_threshold_hours": int(environ.get("RENEWAL_THRESHOLD_HOURS", "48")),
            "provider_timeout_seconds": float(environ.get("PROVIDER_TIMEOUT_SECONDS", "15")),
            "provider_max_attempts": int(environ.get("PROVIDER_MAX_ATTEMPTS", "3")),
            "provider_backoff_seconds": float(environ.get("PROVIDER_BACKOFF_SECONDS", "1.0")),
            "hours_per_day": float(environ.get("HOURS_PER_DAY", "8")),
            "default_timezone": environ.get("DEFAULT_TIMEZONE", "UTC"),
            "redis_url": environ.get("REDIS_URL"),
            "redis_host": environ.get("REDIS_HOST", "localhost"),
            "redis_port": int(environ.get("REDIS_PORT", "6379")),
            "redis_password": environ.get("REDIS_PASSWORD"),
            "redis_ssl": _flag(environ.get("REDIS_SSL"), False),
        }
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    origins = _split_csv(environ.get("ALLOWED_ORIGINS"))
    if origins:
        values["allowed_origins"] = origins

    if values["provider_max_attempts"] < 1:
        raise ConfigurationError("PROVIDER_MAX_ATTEMPTS must be at least 1")

    return Settings(**values)
