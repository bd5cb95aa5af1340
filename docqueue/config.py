"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Batch limits
    max_batch_size: int = 10

    # Job option defaults
    default_max_concurrent: int = 5
    default_timeout_ms: int = 300000  # 5 minutes
    default_retry_attempts: int = 2
    default_retry_delay_ms: int = 2000

    # Job retention
    job_retention_hours: int = 24
    cleanup_interval_seconds: float = 3600

    # External analysis service
    analysis_service_url: str = "http://localhost:8002/api/v1"
    analysis_request_timeout_s: float = 30.0

    # Progress stream
    event_subscriber_buffer: int = 100

    # Service
    service_port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
