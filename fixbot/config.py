"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional

from fixbot.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None
    database_retry_attempts: int = 3
    database_retry_delay_seconds: float = 0.2

    # Redis (distributed rate limiting & job queue)
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # WhatsApp Cloud API
    whatsapp_app_secret: Optional[str] = None  # Signs X-Hub-Signature-256
    whatsapp_verify_token: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_api_version: str = "v21.0"
    whatsapp_timeout_seconds: float = 10.0

    # Processing
    processing_mode: str = "inline"  # "inline" (background task) or "queue" (dramatiq)
    processing_timeout_seconds: float = 30.0  # Live webhook traffic
    queued_processing_timeout_seconds: float = 240.0  # Redelivered / queued messages

    # Deduplication
    dedup_cache_ttl_seconds: int = 1800  # 30 minutes
    dedup_retention_days: int = 7

    # Sessions (optimistic concurrency)
    session_initial_state: str = "START"
    session_max_attempts: int = 3
    session_retry_base_delay_seconds: float = 0.05
    session_retry_max_delay_seconds: float = 1.0

    # Rate Limiting
    rate_limit_per_minute: int = 20
    rate_limit_per_hour: int = 100
    rate_limit_burst_window_seconds: int = 10
    rate_limit_burst_threshold: int = 10
    rate_limit_prune_interval_minutes: int = 5
    rate_limit_key_prefix: str = "ratelimit"

    # Circuit Breaker defaults (per-service overrides in circuit_breakers.SERVICE_BREAKER_CONFIGS)
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_success_threshold: int = 2
    circuit_breaker_cooldown_seconds: float = 30.0

    # Dead Letter Queue
    dlq_max_retries: int = 3
    dlq_first_retry_delay_seconds: int = 60
    dlq_backoff_base: int = 5  # next retry = base ** retry_count minutes
    dlq_sweep_interval_minutes: int = 10
    dlq_batch_size: int = 10
    dlq_entry_timeout_seconds: float = 30.0
    dlq_claim_lease_seconds: float = 300.0  # Replay lease; a crashed sweeper's entry is due again after it
    dlq_media_expiry_hours: int = 24  # Vendor media ids expire after 24h
    dlq_cleanup_days: int = 7
    dlq_alert_threshold: int = 1
    dlq_critical_threshold: int = 5

    # Admin API (X-Admin-Token header)
    admin_api_token: Optional[str] = None

    # Alerting
    alert_webhook_url: Optional[str] = None
    alert_cooldown_seconds: int = 300
    admin_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Worker Configuration
    worker_processes: int = 2
    worker_threads: int = 1

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None
    sentry_environment: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


def validate_settings(config: Settings) -> None:
    """
    Check settings that would make the service unusable.

    Called once at process startup. Never called mid-flow.

    Args:
        config: Settings instance to validate

    Raises:
        ConfigurationError: If a fatal misconfiguration is detected
    """
    problems = []

    if config.processing_mode not in ("inline", "queue"):
        problems.append(f"processing_mode must be 'inline' or 'queue', got '{config.processing_mode}'")

    if config.processing_mode == "queue" and not config.redis_url:
        problems.append("processing_mode 'queue' requires REDIS_URL")

    if config.environment == "production":
        if not config.database_url:
            problems.append("DATABASE_URL is required in production")
        if not config.whatsapp_app_secret:
            problems.append("WHATSAPP_APP_SECRET is required in production")

    positive = {
        "rate_limit_per_minute": config.rate_limit_per_minute,
        "rate_limit_per_hour": config.rate_limit_per_hour,
        "dlq_max_retries": config.dlq_max_retries,
        "dlq_batch_size": config.dlq_batch_size,
        "session_max_attempts": config.session_max_attempts,
        "circuit_breaker_failure_threshold": config.circuit_breaker_failure_threshold,
        "circuit_breaker_success_threshold": config.circuit_breaker_success_threshold,
    }
    for name, value in positive.items():
        if value <= 0:
            problems.append(f"{name} must be positive, got {value}")

    if problems:
        raise ConfigurationError("; ".join(problems))


settings = Settings()
