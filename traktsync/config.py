from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Trakt
    TRAKT_BASE_URL: str = "https://api.trakt.tv"
    TRAKT_API_VERSION: str = "2"
    TRAKT_CLIENT_ID: str = ""
    TRAKT_CLIENT_SECRET: str = ""
    TRAKT_REDIRECT_URI: str = ""
    TRAKT_PAGE_LIMIT: int = 100
    TOKEN_REFRESH_MARGIN_SECONDS: int = 3600  # 1h

    # TMDB
    TMDB_BASE_URL: str = "https://api.themoviedb.org/3"
    TMDB_API_KEY: Optional[str] = None

    # Season cache
    CACHE_DEFAULT_TTL_DAYS: int = 30
    CACHE_ONGOING_TTL_DAYS: int = 7
    CACHE_RECENT_AIR_DATE_DAYS: int = 14
    CACHE_ERROR_TTL_MINUTES: int = 5

    # Enrichment
    ENRICH_BATCH_SIZE: int = 5
    ENRICH_BATCH_DELAY_MS: int = 250

    # Persistence
    STORE_PATH: str = "/data/store.json"
    PERSIST_ENABLED: bool = True
    WRITE_BATCH_SIZE: int = 500

    # Sync Logic
    SYNC_ENRICH_EPISODES: bool = False
    SYNC_STALE_AFTER_SECONDS: int = 7200  # 2h
    JANITOR_INTERVAL_SECONDS: int = 300

    # System
    LOG_LEVEL: str = "INFO"
    APP_URL: str = ""
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
