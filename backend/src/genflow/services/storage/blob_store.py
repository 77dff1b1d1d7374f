"""S3-compatible blob storage for materialized results and hosted inputs.

Works against Cloudflare R2, AWS S3 or MinIO through boto3 with a custom
endpoint. boto3 is synchronous, so calls run in a worker thread.
"""

import asyncio
import io
from abc import ABC, abstractmethod
from typing import BinaryIO
from urllib.parse import urlparse

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from genflow.services.exceptions import BlobStoreError

logger = structlog.get_logger(__name__)

CACHE_CONTROL = "public, max-age=31536000"


class BlobStore(ABC):
    """Durable object storage owned by the system."""

    def __init__(self, public_base_url: str):
        self.public_base_url = public_base_url.rstrip("/")

    @abstractmethod
    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str) -> str:
        """Store a file object under key and return its public URL.

        Raises:
            BlobStoreError: If the write failed
        """

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return its public URL."""
        return await self.put_file(key, io.BytesIO(data), content_type)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def owns(self, url: str) -> bool:
        """True if url points into this store."""
        return bool(url) and url.startswith(self.public_base_url + "/")

    @property
    def public_host(self) -> str:
        return (urlparse(self.public_base_url).hostname or "").lower()


class S3BlobStore(BlobStore):
    """BlobStore backed by an S3-compatible bucket."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region: str = "auto",
        public_base_url: str = "",
    ):
        if not public_base_url:
            public_base_url = f"{(endpoint_url or 'https://s3.amazonaws.com').rstrip('/')}/{bucket}"
        super().__init__(public_base_url)
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )

    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str) -> str:
        try:
            # upload_fileobj switches to multipart for large bodies
            await asyncio.to_thread(
                self.client.upload_fileobj,
                fileobj,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type, "CacheControl": CACHE_CONTROL},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("blob_store.put_failed", key=key, error=str(e))
            raise BlobStoreError(f"Upload of {key} failed: {e}") from e

        url = self.public_url(key)
        logger.info("blob_store.put", key=key, content_type=content_type)
        return url
