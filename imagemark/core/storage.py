"""
Storage Abstraction Layer - The Bridge Pattern

Provides a key-addressed blob store interface with LocalStorage (development)
and S3Storage (production).
"""

import asyncio
import secrets
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from imagemark.core.config import settings
from imagemark.core.exceptions import BlobIOError, BlobNotFound, BlobWriteError, StorageError
from imagemark.core.logging import get_logger

logger = get_logger(__name__)

RAW_FOLDER = "raw"
PROCESSED_FOLDER = "processed"
WATERMARK_FOLDER = "watermark"


def media_type_to_ext(media_type: str) -> str:
    """Map ``image/jpeg`` to ``.jpeg``; anything not ``type/subtype`` is ``.bin``."""
    parts = media_type.split("/")
    if len(parts) != 2 or not parts[1]:
        return ".bin"
    return "." + parts[1]


def generate_asset_key(media_type: str, folder: str) -> str:
    """
    Generate a fresh storage key under ``folder``.

    The name carries 256 bits of randomness, URL-safe base64 encoded without
    padding. Collisions are not checked.
    """
    name = secrets.token_urlsafe(32)
    return f"{folder}/{name}{media_type_to_ext(media_type)}"


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """
        Store ``data`` under ``key``, replacing any existing object.

        Raises:
            BlobWriteError: the object could not be written
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Read the object stored under ``key``.

        Raises:
            BlobNotFound: nothing is stored under ``key``
            BlobIOError: the read failed
        """

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Public URL clients use to fetch the object."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(
        self,
        base_path: str = "./data/storage",
        public_base_url: str = "http://localhost:8000/static/storage"
    ):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}", key=key)
        return path

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        file_path = self._resolve(key)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise BlobWriteError(f"Failed to write {key}: {e}", key=key) from e

    async def get(self, key: str) -> bytes:
        file_path = self._resolve(key)
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise BlobNotFound(f"File not found: {key}", key=key) from e
        except OSError as e:
            raise BlobIOError(f"Failed to read {key}: {e}", key=key) from e

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"


class S3Storage(IStorage):
    """
    S3 storage implementation for production.

    boto3 is blocking, so every call runs in a worker thread. Public URLs go
    through the CloudFront distribution when one is configured.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        cf_distribution: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.region = region
        self.cf_distribution = cf_distribution
        self.client = client or boto3.client("s3", region_name=region)

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobWriteError(f"Failed to upload {key}: {e}", key=key) from e

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            body = obj["Body"]
            try:
                return body.read()
            finally:
                body.close()

        try:
            return await asyncio.to_thread(_read)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BlobNotFound(f"Object not found: {key}", key=key) from e
            raise BlobIOError(f"Failed to download {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise BlobIOError(f"Failed to download {key}: {e}", key=key) from e

    def public_url(self, key: str) -> str:
        if self.cf_distribution:
            return f"https://{self.cf_distribution}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


class StorageFactory:
    """
    Factory for creating storage instances.

    Switching from local storage to S3 is a matter of setting
    STORAGE_BACKEND=s3 and S3_BUCKET. No code changes required.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on settings."""
        if cls._instance is None:
            cls._instance = cls.create()
        return cls._instance

    @classmethod
    def create(cls) -> IStorage:
        if settings.STORAGE_BACKEND.lower() == "s3":
            if not settings.S3_BUCKET:
                raise RuntimeError("STORAGE_BACKEND=s3 requires S3_BUCKET")
            logger.info("storage_backend_selected", backend="s3", bucket=settings.S3_BUCKET)
            return S3Storage(
                bucket=settings.S3_BUCKET,
                region=settings.S3_REGION,
                cf_distribution=settings.S3_CF_DISTRIBUTION
            )
        logger.info("storage_backend_selected", backend="local", path=settings.LOCAL_STORAGE_PATH)
        return LocalStorage(
            base_path=settings.LOCAL_STORAGE_PATH,
            public_base_url=settings.PUBLIC_BASE_URL
        )

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
