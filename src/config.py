"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/nurture"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Twilio (voice + messaging)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_messaging_service_sid: str = ""
    twilio_validate_signatures: bool = True

    # Sentry
    sentry_dsn: str = ""

    # Dispatcher cadence and batch caps
    dispatch_poll_interval_seconds: int = 20
    dispatch_call_batch_size: int = 3
    dispatch_message_batch_size: int = 5
    gateway_timeout_seconds: float = 15.0

    # In-flight call sessions whose terminal callback never arrived
    call_session_max_age_seconds: int = 7200

    # Grace-period sweep
    grace_sweep_interval_seconds: int = 3600
    downgrade_grace_period_days: int = 30

    # Inbound replies
    auto_reply_debounce_seconds: int = 15

    # Worker toggles (disable in tests / one-off scripts)
    workers_enabled: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
