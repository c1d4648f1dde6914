"""MinIO/S3 storage for source and generated images."""

import asyncio
import io
import re
from datetime import UTC, datetime

import structlog
from minio import Minio
from minio.error import S3Error

from variation_batch.core.config import settings

logger = structlog.get_logger()

_VALID_PATH_RE = re.compile(r"^[a-zA-Z0-9._-]+(/[a-zA-Z0-9._-]+)*$")

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def _validate_object_path(object_path: str) -> None:
    """Reject object paths that could escape their prefix."""
    if not _VALID_PATH_RE.match(object_path) or ".." in object_path.split("/"):
        raise ValueError(f"Invalid object path: {object_path!r}")


def variation_object_path(job_id: int, item_index: int, mime_type: str = "image/png") -> str:
    """Build the object path for a generated variation."""
    timestamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
    extension = _EXTENSIONS.get(mime_type, "png")
    return f"variations/{job_id}/{item_index:04d}-{timestamp}.{extension}"


class StorageService:
    """Service for storing and retrieving images from MinIO/S3."""

    def __init__(
        self,
        endpoint: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        bucket: str | None = None,
        secure: bool | None = None,
    ) -> None:
        """Initialize MinIO client with configuration."""
        self.endpoint = endpoint or settings.minio_endpoint
        self.access_key = access_key or settings.minio_access_key
        self.secret_key = secret_key or settings.minio_secret_key
        self.bucket = bucket or settings.minio_bucket
        self.secure = secure if secure is not None else settings.minio_secure

        self._client: Minio | None = None
        self._bucket_checked = False

    @property
    def client(self) -> Minio:
        """Get or create MinIO client."""
        if self._client is None:
            if not self.endpoint or not self.access_key or not self.secret_key:
                raise ValueError("MinIO configuration incomplete")
            self._client = Minio(
                self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
        return self._client

    async def ensure_bucket_exists(self) -> None:
        """Ensure the bucket exists, creating it if necessary."""
        if self._bucket_checked:
            return
        try:
            exists = await asyncio.to_thread(self.client.bucket_exists, self.bucket)
            if not exists:
                await asyncio.to_thread(self.client.make_bucket, self.bucket)
                logger.info("Created bucket", bucket=self.bucket)
        except S3Error as e:
            logger.error("Failed to ensure bucket exists", error=str(e))
            raise
        self._bucket_checked = True

    async def upload_image(
        self, object_path: str, image_data: bytes, content_type: str = "image/png"
    ) -> str:
        """Upload an image.

        Args:
            object_path: Destination path inside the bucket
            image_data: Image bytes
            content_type: MIME type of the image

        Returns:
            The object path where the image was stored
        """
        _validate_object_path(object_path)

        try:
            await self.ensure_bucket_exists()
            await asyncio.to_thread(
                self.client.put_object,
                self.bucket,
                object_path,
                io.BytesIO(image_data),
                len(image_data),
                content_type,
            )
        except S3Error as e:
            logger.error("Failed to upload image", error=str(e), path=object_path)
            raise

        logger.info("Uploaded image", path=object_path, size=len(image_data))
        return object_path

    async def get_image(self, object_path: str) -> bytes | None:
        """Retrieve an image.

        Returns:
            Image bytes or None if not found
        """
        _validate_object_path(object_path)

        try:
            response = await asyncio.to_thread(self.client.get_object, self.bucket, object_path)
        except S3Error as e:
            if e.code == "NoSuchKey":
                logger.debug("Image not found", path=object_path)
                return None
            logger.error("Failed to get image", error=str(e), path=object_path)
            raise

        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def get_public_url(self, object_path: str) -> str:
        """Get the public URL for an object.

        Note: This assumes the bucket has public read access configured.
        """
        _validate_object_path(object_path)
        protocol = "https" if self.secure else "http"
        return f"{protocol}://{self.endpoint}/{self.bucket}/{object_path}"
