from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres (raw_events, jobs, user_integrations)
    DATABASE_URL: str | None = None

    # Google OAuth settings
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None

    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # SYNC SETTINGS
    # =================================================================
    TOKEN_REFRESH_THRESHOLD_MINUTES: int = 5
    SYNC_DEFAULT_DAYS_BACK: int = 365

    GMAIL_BATCH_SIZE: int = 20
    GMAIL_PARALLEL_BATCHES: int = 5
    CALENDAR_BATCH_SIZE: int = 10
    CALENDAR_PARALLEL_BATCHES: int = 3
    CALENDAR_DAYS_FUTURE: int = 365
    SYNC_WAVE_DELAY_SECONDS: float = 0.2

    SYNC_WAIT_TIMEOUT_SECONDS: float = 300.0
    SYNC_WAIT_POLL_SECONDS: float = 2.0

    # Google API rate limiting
    GOOGLE_REQUESTS_PER_SECOND: float = 10.0
    GOOGLE_BURST_SIZE: int = 20
    GOOGLE_LIST_MAX_RETRIES: int = 3
    GOOGLE_REQUEST_TIMEOUT: float = 30.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config

    def get_batch_config(self, provider: str) -> dict:
        """
        Wave shape for a provider: how many groups run at once and how many
        items each group fetches. Calendar uses the smaller variant.
        """
        if provider == "calendar":
            return {
                "batch_size": self.CALENDAR_BATCH_SIZE,
                "parallel_batches": self.CALENDAR_PARALLEL_BATCHES,
                "wave_delay_seconds": self.SYNC_WAVE_DELAY_SECONDS,
            }

        return {
            "batch_size": self.GMAIL_BATCH_SIZE,
            "parallel_batches": self.GMAIL_PARALLEL_BATCHES,
            "wave_delay_seconds": self.SYNC_WAVE_DELAY_SECONDS,
        }


settings = Settings()
