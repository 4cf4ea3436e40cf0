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
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # SendGrid (email channel)
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "team@structure.example"
    sendgrid_from_name: str = "STRUCTURE Team"

    # Evolution API (WhatsApp channel) - two sender identities
    evolution_api_url: str = ""
    evolution_instance_initial: str = "lead"
    evolution_api_key_initial: str = ""
    evolution_instance_followup: str = "meta"
    evolution_api_key_followup: str = ""
    whatsapp_default_country_code: str = "1"

    # Template variables
    calendar_link: str = "https://cal.com/yourlink"

    # Queue processor
    queue_enabled: bool = True
    queue_poll_interval_seconds: int = 60
    queue_batch_size: int = 50
    queue_max_attempts: int = 3
    queue_concurrency: int = 5
    queue_stale_claim_minutes: int = 30
    dispatch_timeout_seconds: float = 15.0

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
