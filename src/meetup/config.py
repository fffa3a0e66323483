"""Application settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables with MEETUP_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="MEETUP_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"

    # --- Storage ---
    storage_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = ""

    # --- Accounts ---
    default_position: tuple[float, float] = (55.751244, 37.618423)
    password_min_length: int = 8
    password_max_length: int = 128
    verification_code_ttl_minutes: int = 10
    reset_code_max_attempts: int = 5
    referral_ttl_days: int = 30
    qr_ttl_hours: int = 24
    movement_history_size: int = 100
    seed_beta_accounts: bool = True

    # --- Retention ---
    rejected_request_retention_days: int = 7
    friend_request_retention_days: int = 30
    backup_retention: int = 5
    backup_on_save: bool = True
    deletion_grace_days: int = 30

    # --- Chat ---
    global_chat_max_messages: int = 1000
    global_chat_max_message_length: int = 1000

    # --- Steps ---
    step_length_km: float = 0.00076
    background_sync_interval_minutes: int = 5

    # --- Workers ---
    arq_redis_url: str = "redis://localhost:6379/0"
    maintenance_job_timeout_seconds: int = 300


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
