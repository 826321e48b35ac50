"""S3FileService provides S3-backed blob storage for uploaded statements."""

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from app.core.errors import TransientStorageError
from app.core.settings import Settings

MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class S3FileService:
    """Service for S3 file operations: upload, download, ensure bucket."""

    def __init__(self, settings: Settings, client: object | None = None) -> None:
        """Initialize S3FileService with an explicit client and ensure the bucket exists."""
        self.s3 = client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
        )
        self.bucket = settings.S3_BUCKET
        self.ensure_bucket()

    def ensure_bucket(self) -> None:
        """Ensure the S3 bucket exists, create if not present."""
        try:
            self.s3.head_bucket(Bucket=self.bucket)
        except ClientError:
            self.s3.create_bucket(Bucket=self.bucket)

    def upload_fileobj(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Upload bytes to S3 under the given key."""
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.s3.put_object(Bucket=self.bucket, Key=str(key), Body=data, **extra)
        except (EndpointConnectionError, BotoCoreError) as exc:
            msg = f"S3 upload failed for {key}: {exc}"
            raise TransientStorageError(msg) from exc

    def download_fileobj(self, key: str) -> bytes:
        """Download an object from S3 by key.

        Raises ``FileNotFoundError`` for a missing key and ``TransientStorageError`` when S3 is unreachable.
        """
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=str(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                raise FileNotFoundError(key) from exc
            msg = f"S3 download failed for {key}: {exc}"
            raise TransientStorageError(msg) from exc
        except (EndpointConnectionError, BotoCoreError) as exc:
            msg = f"S3 download failed for {key}: {exc}"
            raise TransientStorageError(msg) from exc
        return obj["Body"].read()
