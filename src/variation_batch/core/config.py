"""Application configuration."""

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    app_name: str = "Variation Batch"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://localhost/variations"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Gemini image generation
    gemini_api_key: str | None = None
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash-image-preview"
    gemini_description_model: str = "gemini-2.5-flash"
    gemini_timeout_seconds: int = 120

    # MinIO/S3 storage
    minio_endpoint: str | None = None
    minio_access_key: str | None = None
    minio_secret_key: str | None = None
    minio_bucket: str = "variations"
    minio_secure: bool = False

    # Batch processing
    batch_item_delay_seconds: float = 3.0
    batch_pacing_mode: Literal["fixed", "adaptive"] = "fixed"
    worker_enabled: bool = True
    worker_poll_interval_seconds: float = 10.0

    # Adaptive speed controller
    speed_min_delay_ms: float = 500
    speed_max_delay_ms: float = 10000
    speed_base_delay_ms: float = 1500
    speed_success_threshold: float = 0.85
    speed_error_threshold: float = 0.15
    speed_adjustment_factor: float = 1.3
    speed_window_size: int = 20

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
