"""
FieldCheck - Service Configuration

Values are read from the environment (or a local ``.env`` file). The module
level ``settings`` instance is the process default; ``FieldCheckApp.create``
accepts an explicit ``Settings`` so tests can supply their own.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide configuration"""

    # Application
    APP_NAME: str = "Technical Inspection Platform"
    SITE_URL: str = "http://localhost:3000"

    # Storage
    DATABASE_PATH: str = str(Path(__file__).resolve().parents[2] / "data" / "fieldcheck.db")
    OBJECT_STORAGE_ROOT: str = str(Path(__file__).resolve().parents[2] / "data" / "objects")

    # SMTP transport
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_USE_TLS: bool = True

    # Post-completion side effects
    REPORT_FALLBACK_EMAIL: str = ""
    TASK_WEBHOOK_URL: str = ""
    EXTERNAL_TIMEOUT_SECONDS: float = 10.0  # bounded so completion never hangs

    # Uploads
    MAX_PHOTO_BYTES: int = 10 * 1024 * 1024
    MAX_VIDEO_BYTES: int = 200 * 1024 * 1024
    MAX_FILES_PER_UPLOAD: int = 10

    # Dashboard
    OVERDUE_AFTER_DAYS: int = 30

    # Reports
    PDF_COMPRESSION: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_FROM)

    def media_url(self, media_id: int) -> str:
        return f"{self.SITE_URL.rstrip('/')}/api/media/{media_id}"

    def fallback_recipient(self) -> Optional[str]:
        return self.REPORT_FALLBACK_EMAIL.strip() or None


# Default instance
settings = Settings()
