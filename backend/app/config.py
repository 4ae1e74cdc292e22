from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./mesh_jobs.db"

    # External 3D generation API (Hunyuan3D deployment)
    hunyuan_api_url: str = "https://api.hydrilla.co"
    # Per-request timeout in seconds; a timeout only fails that single fetch
    hunyuan_api_timeout: float = 10.0

    # Canonical artifact storage (public bucket, non-expiring URLs)
    s3_bucket: str = "hunyuan3d-outputs"
    s3_region: str = "us-east-1"

    # Background job sync
    sync_enabled: bool = True
    poll_interval_ms: int = 5000
    sync_batch_size: int = 10
    sync_batch_delay_ms: int = 200
    sync_max_scan: int = 1000

    # Frontend
    frontend_url: str = "http://localhost:3000"

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
