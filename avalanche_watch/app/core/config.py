"""
Settings for the bulletin pipeline, read from the environment or ``.env``.

Precedence is env var, then ``.env``, then the defaults below, which target
a local SQLite run with the in-process run guard. Language and timezone
values are checked at load time so a typo fails on startup rather than on
the first scheduled sync.

    from avalanche_watch.app.core.config import settings
    settings.BULLETIN_TIMEZONE  # "Europe/Zurich"
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Avalanche Watch"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    LOG_FORMAT: str = "auto"  # auto (json in production) | json | pretty

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Database ──
    DATABASE_URL: str = "sqlite:///./avalanche_watch.db"
    DATABASE_POOL_SIZE: int = 10  # ignored for SQLite
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Run guard (single-flight for scheduled jobs) ──
    RUN_GUARD_BACKEND: str = "local"  # local | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    RUN_GUARD_TTL_SECONDS: int = 3600  # lock expiry if a worker dies mid-run

    # ── Bulletin provider ──
    BULLETIN_API_BASE_URL: str = "https://aws.slf.ch/api"
    BULLETIN_ENDPOINT: str = "bulletin/caaml/v4/{lang}/geojson"
    BULLETIN_TIMEOUT: float = 30.0  # live sync
    BULLETIN_HISTORY_TIMEOUT: float = 90.0  # back-fill / history fetch
    BULLETIN_MAX_ATTEMPTS: int = 3
    BULLETIN_BACKOFF_BASE: float = 1.0  # seconds
    BULLETIN_BACKOFF_MULTIPLIER: float = 2.0
    BULLETIN_USER_AGENT: str = "AvalancheWatch/1.0"
    BULLETIN_TIMEZONE: str = "Europe/Zurich"
    SUPPORTED_LANGUAGES: List[str] = ["de", "fr", "it", "en"]
    DEFAULT_LANGUAGE: str = "de"
    HISTORY_IMPORT_DELAY_SECONDS: float = 0.5

    # ── Push provider ──
    PUSH_API_URL: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_SERVER_KEY: Optional[str] = None
    PUSH_TIMEOUT: float = 30.0

    # ── Notification dispatch ──
    DISPATCH_MAX_ATTEMPTS: int = 3
    DISPATCH_BACKOFF_SECONDS: float = 60.0
    DISPATCH_WORKERS: int = 4
    REMINDER_TIMEZONE: str = "Europe/Zurich"

    # ── Scheduler ──
    SCHEDULER_ENABLED: bool = False
    SYNC_INTERVAL_MINUTES: int = 30
    REMINDER_INTERVAL_SECONDS: int = 60

    # ── Spatial ──
    GEO_SUBTRACT_HOLES: bool = False  # True = hole-aware containment

    @field_validator("SUPPORTED_LANGUAGES")
    @classmethod
    def _lower_languages(cls, v: List[str]) -> List[str]:
        return [lang.strip().lower() for lang in v if lang.strip()]

    @field_validator("BULLETIN_TIMEZONE", "REMINDER_TIMEZONE")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{v}'")
        return v

    @model_validator(mode="after")
    def _default_language_supported(self) -> "Settings":
        self.DEFAULT_LANGUAGE = self.DEFAULT_LANGUAGE.lower()
        if self.DEFAULT_LANGUAGE not in self.SUPPORTED_LANGUAGES:
            raise ValueError(
                f"DEFAULT_LANGUAGE '{self.DEFAULT_LANGUAGE}' not in {self.SUPPORTED_LANGUAGES}"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
