"""MinIO object storage wrapper for product images."""
import asyncio
import io
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from minio import Minio
from minio.error import MinioException, S3Error

from storefront.core.config import settings
from storefront.services.asset_catalog import ExtractedAsset
from storefront.services.import_errors import AssetResolutionError

logger = logging.getLogger(__name__)

# ─── Client singleton ───

def _build_client() -> Minio:
    return Minio(
        endpoint=settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_SECURE,
    )


_client: Minio | None = None


def get_client() -> Minio:
    global _client
    if _client is None:
        _client = _build_client()
    return _client


# ─── Bucket bootstrap ───

def ensure_bucket(bucket: str = settings.MINIO_BUCKET_NAME) -> None:
    """Create bucket if it does not already exist. Called on startup."""
    client = get_client()
    try:
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info("Created MinIO bucket: %s", bucket)
        else:
            logger.debug("MinIO bucket already exists: %s", bucket)
    except S3Error as exc:
        logger.error("Failed to ensure MinIO bucket %s: %s", bucket, exc)
        raise


# ─── Core operations ───

def upload_file(bucket: str, object_name: str, data: bytes, content_type: str) -> str:
    """Upload bytes to MinIO. Returns the object path."""
    get_client().put_object(
        bucket_name=bucket,
        object_name=object_name,
        data=io.BytesIO(data),
        length=len(data),
        content_type=content_type,
    )
    logger.info("Uploaded %s/%s (%d bytes)", bucket, object_name, len(data))
    return object_name


def delete_object(bucket: str, object_name: str) -> None:
    get_client().remove_object(bucket_name=bucket, object_name=object_name)
    logger.info("Deleted %s/%s", bucket, object_name)


def public_url(bucket: str, object_name: str) -> str:
    return f"{settings.ASSET_PUBLIC_BASE_URL.rstrip('/')}/{bucket}/{object_name}"


# ─── Import image uploads ───

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", filename).strip("._")
    return cleaned[:100] or "image"


def build_object_name(merchant_id: str, filename: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (
        f"products/{sanitize_filename(merchant_id)}/{now:%Y}/{now:%m}/"
        f"{uuid.uuid4().hex[:12]}-{sanitize_filename(filename)}"
    )


@dataclass(frozen=True)
class UploadedImage:
    filename: str
    object_name: str
    url: str


class ImageUploader:
    """Async facade over the blocking MinIO client used by the commit engine."""

    def __init__(self, bucket: str = settings.MINIO_BUCKET_NAME):
        self.bucket = bucket

    async def upload(self, merchant_id: str, asset: ExtractedAsset) -> UploadedImage:
        object_name = build_object_name(merchant_id, asset.filename)
        try:
            await asyncio.to_thread(upload_file, self.bucket, object_name, asset.data, asset.content_type)
        except (MinioException, OSError) as exc:
            logger.error("Upload of %s failed: %s", asset.filename, exc)
            raise AssetResolutionError(
                f"Failed to upload image {asset.filename}", field="image_files", code="UPLOAD_FAILED"
            ) from exc
        return UploadedImage(
            filename=asset.filename,
            object_name=object_name,
            url=public_url(self.bucket, object_name),
        )

    async def delete(self, image: UploadedImage) -> None:
        await asyncio.to_thread(delete_object, self.bucket, image.object_name)
