"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from helpdesk_sync.integrations.freshservice.pacing import PacingPolicy

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    APP_NAME: str = "Helpdesk Sync"
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "postgresql+psycopg://postgres@localhost:5432/helpdesk_sync"
    CORS_ORIGINS: str = "http://localhost:3000"

    # freshservice credentials
    FRESHSERVICE_DOMAIN: str = ""
    FRESHSERVICE_API_KEY: str = ""
    FRESHSERVICE_WORKSPACE_ID: int | None = None
    FRESHSERVICE_TIMEOUT_SECONDS: float = 30.0

    # sync windows
    SYNC_DAYS_TO_SYNC: int = 30
    SYNC_INCREMENTAL_BUFFER_MINUTES: int = 5
    SYNC_CSAT_LOOKBACK_DAYS: int = 30

    # pacing; Freshservice allows roughly 5000 requests per rolling hour
    SYNC_PAGE_SIZE: int = 100
    SYNC_PAGE_DELAY_SECONDS: float = 1.0
    SYNC_RETRY_BASE_SECONDS: float = 5.0
    SYNC_RETRY_MAX_SECONDS: float = 60.0
    SYNC_RETRY_ATTEMPTS: int = 3
    SYNC_ENRICH_CONCURRENCY: int = 5
    SYNC_ENRICH_STAGGER_SECONDS: float = 0.2
    SYNC_ENRICH_CHUNK_PAUSE_SECONDS: float = 1.1
    SYNC_REQUESTER_DELAY_SECONDS: float = 1.1
    SYNC_CSAT_DELAY_SECONDS: float = 0.1

    SYNC_AUTO_ENABLED: bool = False
    SYNC_AUTO_INTERVAL_MINUTES: int = 5
    SYNC_AUTO_STARTUP_DELAY_SECONDS: int = 10

    model_config = SettingsConfigDict(env_file=str(BASE_DIR / ".env"), env_file_encoding="utf-8")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def freshservice_ready(self) -> bool:
        return bool(self.FRESHSERVICE_DOMAIN.strip() and self.FRESHSERVICE_API_KEY.strip())

    @property
    def auto_sync_interval_minutes(self) -> int:
        # cron-style intervals only make sense between 1 and 60 minutes
        if 1 <= self.SYNC_AUTO_INTERVAL_MINUTES <= 60:
            return self.SYNC_AUTO_INTERVAL_MINUTES
        return 5

    def pacing_policy(self) -> PacingPolicy:
        return PacingPolicy(
            page_size=self.SYNC_PAGE_SIZE,
            page_delay=self.SYNC_PAGE_DELAY_SECONDS,
            retry_base_delay=self.SYNC_RETRY_BASE_SECONDS,
            retry_max_delay=self.SYNC_RETRY_MAX_SECONDS,
            retry_attempts=self.SYNC_RETRY_ATTEMPTS,
            enrich_concurrency=self.SYNC_ENRICH_CONCURRENCY,
            enrich_stagger=self.SYNC_ENRICH_STAGGER_SECONDS,
            enrich_chunk_pause=self.SYNC_ENRICH_CHUNK_PAUSE_SECONDS,
            requester_delay=self.SYNC_REQUESTER_DELAY_SECONDS,
            csat_delay=self.SYNC_CSAT_DELAY_SECONDS,
        )


settings = Settings()
