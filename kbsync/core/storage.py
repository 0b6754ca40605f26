"""
Object storage for raw document bytes. S3 OR local filesystem.
Controlled by FF_USE_S3 flag. Callers choose the key; backends only store.
"""

import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Store bytes under key. Raises on failure."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Read bytes back, or None if the key does not exist."""
        ...

    @abstractmethod
    async def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        """URL a browser can use to download the object."""
        ...


class S3Storage(StorageBackend):
    def __init__(self, bucket: Optional[str] = None):
        self._client = None
        self.bucket = bucket or get_settings().s3_bucket_name

    def _get_client(self):
        if self._client is None:
            import boto3

            settings = get_settings()
            kwargs = {"region_name": settings.aws_region}
            if settings.aws_access_key_id:
                kwargs["aws_access_key_id"] = settings.aws_access_key_id
                kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type or guess_content_type(key),
        )
        logger.info("Uploaded to S3: %s (%d bytes)", key, len(data))

    async def get(self, key: str) -> Optional[bytes]:
        client = self._get_client()
        try:
            obj = client.get_object(Bucket=self.bucket, Key=key)
        except client.exceptions.NoSuchKey:
            return None
        return obj["Body"].read()

    async def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )


class LocalStorage(StorageBackend):
    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or get_settings().local_storage_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes base path: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Saved locally: %s (%d bytes)", path, len(data))

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    async def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return self._path(key).as_uri()


def get_storage() -> StorageBackend:
    """Return the active storage backend based on feature flags."""
    flags = get_flags()
    if flags.use_s3:
        return S3Storage()
    return LocalStorage()


def guess_content_type(filename: str) -> str:
    ct, _ = mimetypes.guess_type(filename)
    return ct or "application/octet-stream"
