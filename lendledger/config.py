"""Configuration management for lendledger."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LENDLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    debug: bool = False

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./lendledger.db"
    # Seconds a writer waits on a locked SQLite database before SQLITE_BUSY
    busy_timeout: float = 5.0

    # Retry policy for acquire/release transactions
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.05
    retry_backoff_factor: float = 2.0

    # Deadline for a whole operation including retries (None disables)
    operation_timeout: float | None = None

    # Loan period used when the caller gives no due date
    default_loan_days: int = 14

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
