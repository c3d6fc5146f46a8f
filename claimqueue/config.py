"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backing store
    store_url: str = "memory://"
    store_pool_size: int = 10
    store_max_overflow: int = 20
    store_poll_interval_seconds: float = 0.5
    store_transform_max_retries: int = 25

    # Queue
    queue_base: str = "jobs"

    # Runner
    worker_count: int = 1
    handler_module: str | None = None

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "claimqueue"
    tracing_enabled: bool = False
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
