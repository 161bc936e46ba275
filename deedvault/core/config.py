"""
DeedVault Configuration
Environment-driven settings, injected into every component at construction.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


MIB = 1024 * 1024

DEFAULT_ALLOWED_MIME_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
]


class Settings(BaseSettings):
    """Settings for the document integrity service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "DeedVault"
    app_version: str = "1.0.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./deedvault.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    # Object storage
    storage_provider: str = "local"  # local, memory, r2
    storage_root: str = "storage_records"
    default_bucket: str = "documents"
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""

    # Chunked transfer
    chunk_size: int = Field(5 * MIB, gt=0)
    multipart_threshold: int = Field(6 * MIB, gt=0)

    # Verification limits
    max_verification_file_size: int = Field(50 * MIB, gt=0)
    allowed_mime_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))
    max_batch_size: int = Field(10, gt=0)
    max_batch_total_size: int = Field(500 * MIB, gt=0)

    # Audit
    audit_log_dir: str = "logs/audit"
    audit_webhook_url: Optional[str] = None

    @property
    def allowed_mime_types_set(self) -> set[str]:
        return {m.strip().lower() for m in self.allowed_mime_types}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
