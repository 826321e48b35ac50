"""Configuration and environment settings for the statement import service."""

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_MIME_TYPES = [
    "application/pdf",
    "text/csv",
    "application/vnd.ms-excel",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
]


class Settings(BaseSettings):
    """Application settings for the statement import service."""

    groq_api_key: str = ""
    vision_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    vision_temperature: float = 0.1
    vision_max_completion_tokens: int = 8192
    vision_timeout_seconds: float = 60.0
    vision_max_retries: int = 3
    vision_backoff_seconds: float = 2.0
    vision_max_pages: int = 5
    vision_render_resolution: int = 150

    min_text_length: int = 100
    min_vision_confidence: int = 50
    reconciliation_tolerance: float = 1.0

    storage_backend: str = "auto"
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_BUCKET: str = "statement-imports"
    local_storage_dir: str = ".local-storage"
    storage_max_retries: int = 3
    storage_backoff_seconds: float = 0.5

    max_file_size_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: list[str] = DEFAULT_ALLOWED_MIME_TYPES

    database_url: str = "sqlite:///imports.db"
    worker_concurrency: int = 5
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    log_file: str = "jobs/import_processing.log"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def s3_configured(self) -> bool:
        """Whether S3 credentials are present."""
        return bool(self.S3_ACCESS_KEY and self.S3_SECRET_KEY)


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
