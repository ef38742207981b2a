"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Document store
    mongodb_url: Optional[str] = None
    mongodb_database: str = "lead_discovery"

    # Redis & Job Queue
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # LLM (lead analysis)
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-haiku-20241022"
    anthropic_max_output_tokens: int = 4000
    claude_input_cost_per_million: float = 0.80  # Haiku 3.5 pricing: $0.80/M input
    claude_output_cost_per_million: float = 4.00  # Haiku 3.5 pricing: $4/M output

    # Collectors
    google_places_api_key: Optional[str] = None
    google_places_cost_per_call: float = 0.032  # Text Search (Basic): $32 per 1000 requests
    google_places_timeout_seconds: float = 15.0

    # Email Notifications
    admin_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Discord notifications (bot posts into the channel configured on the profile)
    discord_bot_token: Optional[str] = None

    # Worker Configuration
    worker_processes: int = 2
    worker_threads: int = 4

    # Token Safety: per-sweep limits
    discovery_max_tokens_per_sweep: int = 50_000
    discovery_max_api_calls_per_sweep: int = 20
    discovery_max_leads_to_analyze: int = 50

    # Token Safety: per-company daily limits
    discovery_max_tokens_per_company_per_day: int = 100_000
    discovery_max_sweeps_per_company_per_day: int = 3

    # Token Safety: global platform limits
    discovery_max_tokens_per_hour: int = 500_000
    discovery_max_concurrent_sweeps: int = 5

    # Token Safety: cost circuit breaker
    discovery_max_daily_cost_usd: float = 50.0
    discovery_alert_threshold_usd: float = 25.0

    # Sweep circuit breaker: 5 consecutive failed sweeps, 5 minutes cooldown
    sweep_circuit_fail_max: int = 5
    sweep_circuit_cooldown_seconds: int = 300

    # Sweep execution
    sweep_timeout_seconds: int = 600  # Wall-clock deadline per sweep
    stale_sweep_grace_seconds: int = 600  # Past the deadline before a pending/running sweep is reaped
    sweep_max_results_per_source: int = 20
    scheduler_interval_minutes: int = 15

    # Collaborator circuit breakers (MongoDB, Google Places, Claude)
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt
    circuit_breaker_alert_email: Optional[str] = None  # Falls back to admin_email

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
