"""Settings for SignFlow, read from ``SIGNFLOW_*`` environment variables.

Everything has a working default so the CLI and tests run with no
environment at all. Data lives under ``~/.signflow`` unless overridden.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SIGNFLOW_DIR = Path.home() / ".signflow"

# Access URLs handed out at upload and after signing stay valid for a week.
DEFAULT_ACCESS_URL_TTL = 7 * 24 * 3600


class Settings(BaseSettings):
    """Application settings.

    Attributes:
        data_dir: Root directory for document records, audit logs and
            (with the filesystem backend) artifacts.
        storage_backend: ``filesystem`` or ``s3``.
        s3_bucket: Bucket name for the S3 backend.
        s3_region: Region for the S3 backend.
        url_signing_secret: HMAC key for filesystem access URLs.
        access_url_ttl: Lifetime of issued access URLs, in seconds.
        session_ttl: Idle lifetime of an annotation session, in seconds.
        max_undo_depth: Cap on annotation undo history (None = unbounded).
        notify_workers: Threads used for fire-and-forget notifications.
    """

    data_dir: Path = DEFAULT_SIGNFLOW_DIR
    storage_backend: Literal["filesystem", "s3"] = "filesystem"
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    url_signing_secret: SecretStr = SecretStr("signflow-dev-secret")
    access_url_ttl: int = Field(DEFAULT_ACCESS_URL_TTL, ge=1)
    session_ttl: int = Field(30 * 60, ge=1)
    max_undo_depth: Optional[int] = Field(None, ge=1)
    notify_workers: int = Field(2, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="SIGNFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings singleton."""
    return Settings()
