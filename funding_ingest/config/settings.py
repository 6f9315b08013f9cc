"""
Runtime settings loaded from environment variables (FUNDING_INGEST_*).
"""

import os
import socket
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    # Persistence
    database_url: Optional[str] = None
    db_min_pool_size: int = 1
    db_max_pool_size: int = 5

    # Worker / state machine
    worker_id: str = Field(default_factory=default_worker_id)
    max_attempts: int = 3
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    stale_claim_seconds: float = 1800.0
    poll_interval_seconds: float = 5.0
    max_idle_polls: int = 16
    reap_interval_seconds: float = 60.0
    concurrency: int = 4

    # Source fetching
    request_timeout: float = 30.0
    requests_per_second: float = 2.0

    # Attachment extraction
    min_text_length: int = 100
    max_attachment_chars: int = 5000

    # Conversion fallback (Hancom Docs); disabled while credentials are unset
    hancom_email: Optional[str] = None
    hancom_password: Optional[str] = None
    hancom_headless: bool = True
    conversion_login_timeout: float = 60.0
    conversion_upload_timeout: float = 50.0
    conversion_editor_timeout: float = 30.0
    conversion_download_timeout: float = 60.0
    conversion_poll_interval: float = 1.0

    # Classification tables
    taxonomy_path: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="FUNDING_INGEST_", env_file=".env", extra="ignore")

    @property
    def conversion_enabled(self) -> bool:
        return bool(self.hancom_email and self.hancom_password)


@lru_cache
def get_settings() -> Settings:
    return Settings()
