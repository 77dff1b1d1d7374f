"""Result materializer: copy vendor-hosted artifacts into system-owned storage.

The download is streamed with a hard size ceiling and spooled to a temporary
file, so a 500MB video never has to sit in memory. Oversized payloads are
rejected, never truncated.
"""

import mimetypes
import tempfile
from dataclasses import dataclass
from uuid import UUID

import httpx
import structlog

from genflow.services.exceptions import BlobStoreError, FetchFailed, TooLarge, UploadFailed
from genflow.services.storage.blob_store import BlobStore

logger = structlog.get_logger(__name__)

# Downloads above this size spill from memory to disk
SPOOL_MAX_MEMORY = 8 * 1024 * 1024


@dataclass(frozen=True)
class MaterializedResult:
    storage_url: str
    size_bytes: int
    content_type: str
    copied: bool = True


def extension_for(content_type: str, fallback: str = ".bin") -> str:
    """File extension for a MIME type (video/mp4 -> .mp4)."""
    base_type = content_type.split(";")[0].strip().lower()
    if base_type == "image/jpeg":
        return ".jpg"
    return mimetypes.guess_extension(base_type) or fallback


def result_key(owner_id: str, generation_id: UUID, content_type: str) -> str:
    """Storage path keyed by owner and generation."""
    return f"generations/{owner_id}/{generation_id}{extension_for(content_type)}"


class ResultMaterializer:
    """Downloads an external artifact and re-uploads it to the blob store."""

    def __init__(
        self,
        blob_store: BlobStore,
        max_bytes: int = 500 * 1024 * 1024,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize materializer.

        Args:
            blob_store: Destination storage
            max_bytes: Size ceiling for a single artifact (default: 500MB)
            timeout: Per-operation network timeout in seconds (default: 60s)
            transport: Optional httpx transport (used by tests)
        """
        self.blob_store = blob_store
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.transport = transport

    async def materialize(
        self,
        external_url: str,
        owner_id: str,
        generation_id: UUID,
        default_content_type: str = "video/mp4",
    ) -> MaterializedResult:
        """Fetch external_url and store it under the owner's generation path.

        URLs that already point into the blob store are returned unchanged.

        Raises:
            FetchFailed: Download failed (network error or non-2xx)
            TooLarge: Artifact is bigger than max_bytes (nothing is stored)
            UploadFailed: Artifact was downloaded but the blob store write failed
        """
        if self.blob_store.owns(external_url):
            return MaterializedResult(
                storage_url=external_url,
                size_bytes=0,
                content_type=default_content_type,
                copied=False,
            )

        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
            size, content_type = await self._download(external_url, spool, default_content_type)
            spool.seek(0)

            key = result_key(owner_id, generation_id, content_type)
            try:
                storage_url = await self.blob_store.put_file(key, spool, content_type)  # type: ignore[arg-type]
            except BlobStoreError as e:
                raise UploadFailed(str(e), source_url=external_url) from e

        logger.info(
            "materializer.stored",
            generation_id=str(generation_id),
            key=key,
            size_bytes=size,
            content_type=content_type,
        )
        return MaterializedResult(storage_url=storage_url, size_bytes=size, content_type=content_type)

    async def _download(self, url: str, sink, default_content_type: str) -> tuple[int, str]:
        size = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=True
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise FetchFailed(f"Artifact download returned HTTP {response.status_code}")

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        self._log_too_large(url, int(declared))
                        raise TooLarge(int(declared), self.max_bytes)

                    content_type = response.headers.get("content-type") or default_content_type
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self.max_bytes:
                            self._log_too_large(url, size)
                            raise TooLarge(size, self.max_bytes)
                        sink.write(chunk)

        except httpx.TimeoutException as e:
            raise FetchFailed(f"Artifact download timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise FetchFailed(f"Artifact download failed: {e}") from e

        if size == 0:
            raise FetchFailed("Artifact download returned an empty body")
        return size, content_type.split(";")[0].strip()

    def _log_too_large(self, url: str, size: int) -> None:
        logger.warning(
            "materializer.too_large",
            source_url=url,
            size_bytes=size,
            limit_bytes=self.max_bytes,
        )
