"""Configuration from environment (no hardcoded secrets)."""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Backend settings from env."""

    model_config = SettingsConfigDict(env_prefix="APERTURE_", extra="ignore")

    # Database (database_url wins over db_path when set; must be an async driver URL)
    db_path: Path = Path("/data/aperture.db")
    database_url: str = ""

    # Object store: "local" keeps buckets as directories under storage_base_path
    storage_backend: str = "local"
    storage_base_path: Path = Path("/mnt/shared_storage/aperture")
    storage_bucket: str = "galleries"
    storage_public_base_url: str = ""
    s3_endpoint_url: str = ""
    s3_region: str = ""
    max_upload_bytes: int = 200 * 1024 * 1024

    # Dropbox (empty token = folder/selection imports fail with a configuration error)
    dropbox_access_token: str = ""
    dropbox_api_base_url: str = "https://api.dropboxapi.com/2"
    dropbox_content_base_url: str = "https://content.dropboxapi.com/2"
    dropbox_timeout_seconds: float = 60.0

    # Inbound webhooks: empty secret = open mode (every delivery accepted)
    webhook_secret: str = ""
    webhook_require_secret: bool = False
    # Outbound notifications (empty url = only written to the event log)
    notify_webhook_url: str = ""
    notify_webhook_secret: str = ""

    # Batch import
    import_concurrency: int = 4
    import_timeout_seconds: float = 300.0

    # CORS: set as comma-separated string in env so pydantic-settings does not try to JSON-decode it
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma)."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or [
            "http://localhost:3000"
        ]

    @property
    def sqlalchemy_url(self) -> str:
        """Async SQLAlchemy URL for the catalog database."""
        if self.database_url.strip():
            return self.database_url.strip()
        return f"sqlite+aiosqlite:///{self.db_path}"

    # Server
    port: int = 8080

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
