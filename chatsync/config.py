"""Configuration management for chatsync."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHATSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    debug: bool = False
    log_level: str = "INFO"

    # Local store
    database_url: str = "sqlite+aiosqlite:///./chatsync.db"

    # Remote store
    remote_url: str = "http://127.0.0.1:8765"
    request_timeout_seconds: float = 10.0
    send_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 2.0
    probe_interval_seconds: float = 10.0

    # Retry policy
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    backoff_jitter: float = 0.2
    lifetime_max_attempts: int = 10

    # Coordinator
    drain_interval_seconds: float | None = 30.0
    resync_on_gap: bool = True
    allow_metered_sync: bool = True
    power_saving_delay_seconds: float = 5.0

    # Content
    max_message_length: int = 10_000

    # Emulator
    emulator_host: str = "127.0.0.1"
    emulator_port: int = 8765


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
