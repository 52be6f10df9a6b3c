"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/lessongen.db"
    scheduler_database_url: str = "sqlite:///data/scheduler.db"

    # Completion provider
    generation_api_url: str = "https://ai.gateway.lovable.dev/v1"
    generation_api_key: str | None = None
    generation_model: str = "google/gemini-2.5-flash"
    generation_temperature: float = 0.7
    custom_generation_temperature: float = 0.8
    generation_timeout_seconds: float = 30.0

    # Moderation
    moderation_model: str | None = None  # Falls back to generation_model
    moderation_temperature: float = 0.3
    moderation_timeout_seconds: float = 10.0

    # Batch generation
    batch_max_attempts: int = 3
    batch_retry_backoff_seconds: float = 2.0  # Doubles after each hard failure
    batch_rate_limit_backoff_seconds: float = 20.0
    batch_max_rate_limit_waits: int = 5
    batch_unit_delay_seconds: float = 1.0
    batch_grade_delay_seconds: float = 10.0
    batch_lessons_per_subject: int = 1
    batch_job_name: str = "seed-lessons"
    batch_lock_ttl_minutes: int = 360

    # Circuit breaker
    circuit_failure_threshold: int = 10
    circuit_reset_seconds: float = 60.0

    # Quotas
    custom_lessons_per_child_per_day: int = 3
    counter_backend: str = "sql"  # "sql", "memory" or "redis"

    # Rate limits (requests per window)
    custom_lesson_rate_limit: int = 10
    custom_lesson_rate_window_minutes: int = 1440
    share_request_rate_limit: int = 5
    share_request_rate_window_minutes: int = 1440
    collaboration_rate_limit: int = 10
    collaboration_rate_window_minutes: int = 15
    signup_rate_limit: int = 10
    signup_rate_window_minutes: int = 60
    feedback_rate_limit: int = 10
    feedback_rate_window_minutes: int = 60
    password_reset_rate_limit: int = 5
    password_reset_rate_window_minutes: int = 60

    # Idempotency
    idempotency_ttl_hours: int = 24

    # Scheduler
    scheduler_timezone: str = "UTC"
    scheduler_max_workers: int = 2
    seed_interval_minutes: int = 0  # 0 disables scheduled seeding
    pruning_interval_minutes: int = 1440
    counter_retention_days: int = 7

    # Redis
    redis_url: str | None = None  # Redis connection URL (e.g., redis://localhost:6379/0)
    redis_prefix: str = "lessongen:"

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
