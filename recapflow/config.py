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
    database_url: str = "postgresql+asyncpg://localhost:5432/recapflow"
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_echo: bool = False

    # Redis (idempotency locks, alert cooldowns, worker heartbeats, queue wake-ups)
    redis_url: str = "redis://localhost:6379/0"

    # Idempotency
    idempotency_ttl_seconds: int = 86400  # 24 hours
    idempotency_timeout_seconds: float = 5.0

    # Webhook failure retry ladder (handler-level exceptions)
    webhook_retry_delays_minutes: list[int] = [1, 5, 15]
    webhook_retry_max_attempts: int = 3

    # Transcript fetch ladder ("not ready yet" responses)
    transcript_fetch_max_retries: int = 3
    transcript_fetch_initial_delay_seconds: int = 120
    transcript_fetch_max_delay_seconds: int = 600

    # Transcript job queue (transient download failures inside a job)
    transcript_job_max_attempts: int = 4
    transcript_job_backoff_seconds: float = 1.0
    transcript_worker_concurrency: int = 5
    transcript_worker_poll_seconds: int = 30

    # Request-path budget for inline transcript retrieval
    inline_fetch_budget_seconds: float = 20.0
    http_timeout_seconds: float = 10.0
    download_timeout_seconds: float = 30.0

    # Webhook verification
    allow_unsigned_webhooks: bool = False
    zoom_webhook_secret_token: str = ""
    zoom_signature_max_age_seconds: int = 300
    meet_pubsub_audience: str = ""
    meet_jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    teams_webhook_bearer_token: str = ""
    teams_client_state: str = ""

    # Zoom API (server-to-server OAuth, used when a webhook carries no download token)
    zoom_account_id: str = ""
    zoom_client_id: str = ""
    zoom_client_secret: str = ""

    # Google Meet API (OAuth refresh token)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_refresh_token: str = ""

    # Microsoft Graph (client credentials)
    teams_tenant_id: str = ""
    teams_client_id: str = ""
    teams_client_secret: str = ""

    # Draft generation collaborator
    draft_service_url: str = ""
    draft_service_api_key: str = ""
    draft_service_timeout_seconds: float = 60.0

    # Operator API
    operator_jwt_secret: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Sentry
    sentry_dsn: str = ""

    # Sweeper
    stuck_meeting_threshold_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
