import io
import logging
import time
from datetime import timedelta
from minio import Minio
from minio.error import MinioException
from urllib3.exceptions import HTTPError as TransportError
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE, MINIO_REGION

logger = logging.getLogger(__name__)

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE,
    region=MINIO_REGION,
)

class StorageError(Exception):
    pass

class UploadError(StorageError):
    pass

class RemovalError(StorageError):
    pass

def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)

def object_url(key: str) -> str:
    scheme = "https" if MINIO_SECURE else "http"
    return f"{scheme}://{MINIO_ENDPOINT}/{MINIO_BUCKET}/{key}"

def store_file(data: bytes, content_type: str, suggested_name: str, folder: str = "documents") -> dict:
    """Upload bytes and return the locator ``{"url": ..., "key": ...}``."""
    key = f"{folder}/{int(time.time() * 1000)}-{suggested_name}"
    try:
        ensure_bucket()
        _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)
    except (MinioException, TransportError, OSError) as exc:
        logger.error("Upload of %s failed: %s", key, exc)
        raise UploadError("File upload failed") from exc
    return {"url": object_url(key), "key": key}

def remove_file(key: str):
    try:
        _client.remove_object(MINIO_BUCKET, key)
    except (MinioException, TransportError, OSError) as exc:
        logger.error("Removal of %s failed: %s", key, exc)
        raise RemovalError("File deletion failed") from exc

def signed_read_url(key: str, ttl_seconds: int = 3600) -> str:
    try:
        return _client.presigned_get_object(MINIO_BUCKET, key, expires=timedelta(seconds=ttl_seconds))
    except (MinioException, TransportError, OSError, ValueError) as exc:
        raise StorageError("Could not sign file URL") from exc
