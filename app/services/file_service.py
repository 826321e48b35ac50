"""Blob store facade over the S3 and local-disk backends."""

import re
import time
from typing import Protocol

from app.core.errors import TransientStorageError
from app.core.settings import Settings
from app.core.utils import get_logger, retry_with_backoff

from .local_file_service import LocalFileService
from .s3_file_service import S3FileService

logger = get_logger("statement-import.storage")


class BlobBackend(Protocol):
    """Operations every storage backend provides."""

    def upload_fileobj(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Store bytes under a key."""

    def download_fileobj(self, key: str) -> bytes:
        """Fetch bytes for a key."""


class FileService:
    """Service for file operations; transient backend errors are retried with backoff."""

    def __init__(self, backend: BlobBackend, max_retries: int = 3, backoff_seconds: float = 0.5) -> None:
        """Initialize FileService with a storage backend and retry policy."""
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    def save_file(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Save a file under the given key."""
        retry_with_backoff(
            lambda: self.backend.upload_fileobj(key, data, content_type),
            retry_on=(TransientStorageError,),
            attempts=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            logger=logger,
            label=f"upload {key}",
        )
        logger.info(f"Stored {len(data)} bytes at {key}")

    def get_file(self, key: str) -> bytes:
        """Retrieve a file by key."""
        return retry_with_backoff(
            lambda: self.backend.download_fileobj(key),
            retry_on=(TransientStorageError,),
            attempts=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            logger=logger,
            label=f"download {key}",
        )


def sanitize_file_name(file_name: str) -> str:
    """Make a file name safe for use in a storage key."""
    cleaned = re.sub(r"\s+", "-", file_name)
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "", cleaned)
    return cleaned.lower() or "upload"


def generate_import_key(user_id: str, file_name: str) -> str:
    """Build a storage key of the form ``imports/<user>/<timestamp>-<name>``."""
    timestamp = int(time.time() * 1000)
    return f"imports/{sanitize_file_name(user_id)}/{timestamp}-{sanitize_file_name(file_name)}"


def build_file_service(settings: Settings) -> FileService:
    """Pick the storage backend from settings: S3 when configured, local disk otherwise."""
    backend_name = settings.storage_backend.lower()
    if backend_name == "s3" or (backend_name == "auto" and settings.s3_configured):
        backend: BlobBackend = S3FileService(settings)
        logger.info(f"Using S3 storage (bucket={settings.S3_BUCKET})")
    else:
        backend = LocalFileService(settings.local_storage_dir)
        logger.info(f"Using local storage at {settings.local_storage_dir}")
    return FileService(backend, settings.storage_max_retries, settings.storage_backoff_seconds)
