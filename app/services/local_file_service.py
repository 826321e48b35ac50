"""Local-disk blob storage used when S3 credentials are not configured."""

from pathlib import Path

from app.core.utils import ensure_dir


class LocalFileService:
    """Stores blobs as files under a root directory, keyed by relative path."""

    def __init__(self, root: str | Path) -> None:
        """Initialize the store and create its root directory."""
        self.root = Path(root).resolve()
        ensure_dir(self.root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            msg = f"Key escapes storage root: {key}"
            raise ValueError(msg)
        return path

    def upload_fileobj(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Write bytes under the given key."""
        _ = content_type
        path = self._path(key)
        ensure_dir(path.parent)
        path.write_bytes(data)

    def download_fileobj(self, key: str) -> bytes:
        """Read bytes for a key; raises ``FileNotFoundError`` if absent."""
        return self._path(key).read_bytes()
