"""Laozhang gateway adapters: Sora2 and Veo3 (async videos API) and NanoBanana.

Videos API:
- POST {base}/v1/videos            create task (JSON, or multipart with input_reference)
- GET  {base}/v1/videos/{id}       poll status
- GET  {base}/v1/videos/{id}/content  resolves to the video location

NanoBanana is synchronous: generateContent returns the image inline, so the
adapter stores it during create_task and the task handle is its storage key.
"""

import base64
import binascii
from abc import abstractmethod
from typing import Any

import httpx
import structlog

from genflow.models.generation import VendorTool
from genflow.services.exceptions import VendorRejected, VendorUnavailable
from genflow.services.storage.materializer import result_key
from genflow.services.vendors.base import (
    NormalizedStatus,
    TaskContext,
    TaskState,
    VendorAdapter,
    json_body,
    load_media,
    params_as,
)
from genflow.services.vendors.params import (
    NanoBananaParams,
    Sora2Params,
    ToolParams,
    Veo3Params,
    ceil_credits,
)

logger = structlog.get_logger(__name__)

SORA2_MODEL = "sora-2"
NANOBANANA_MODEL = "gemini-3-pro-image-preview"

VIDEO_STATUS_MAP = {
    "queued": TaskState.PROCESSING,
    "submitted": TaskState.PROCESSING,
    "processing": TaskState.PROCESSING,
    "in_progress": TaskState.PROCESSING,
    "completed": TaskState.COMPLETED,
    "failed": TaskState.FAILED,
}


def extract_task_id(body: dict[str, Any]) -> str | None:
    """Task id may come back as id, task_id or data.id."""
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    task_id = body.get("id") or body.get("task_id") or data.get("id")  # type: ignore[union-attr]
    return str(task_id) if task_id else None


class LaozhangVideoAdapter(VendorAdapter):
    """Shared create/poll logic for the Laozhang async videos API."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.videos_url = f"{self.base_url}/v1/videos"

    @abstractmethod
    def build_fields(self, params: ToolParams) -> dict[str, str]:
        """Form fields of the create call, without the reference image."""

    async def create_task(self, params: ToolParams, context: TaskContext) -> str:
        fields = self.build_fields(params)
        image = getattr(params, "image", None)

        if image:
            # Image-to-video: the vendor only accepts the reference as a file upload
            media = await load_media(
                image,
                self.media_policy.max_inline_bytes,
                timeout=self.timeout,
                transport=self.transport,
            )
            extension = media.mime_type.split("/")[-1] or "png"
            response = await self._request(
                "POST",
                self.videos_url,
                idempotent=False,
                data=fields,
                files={"input_reference": (f"image.{extension}", media.data, media.mime_type)},
            )
        else:
            response = await self._request("POST", self.videos_url, idempotent=False, json=fields)

        task_id = extract_task_id(json_body(response))
        if not task_id:
            raise VendorRejected("No task ID in response")

        logger.info(
            "vendor.task_created",
            tool=self.tool.value,
            task_id=task_id,
            model=fields.get("model"),
            image_to_video=bool(image),
        )
        return task_id

    async def get_status(self, task_handle: str) -> NormalizedStatus:
        response = await self._request("GET", f"{self.videos_url}/{task_handle}")
        body = json_body(response)

        native = str(body.get("status", "")).lower()
        state = VIDEO_STATUS_MAP.get(native, TaskState.PROCESSING)
        progress = body.get("progress")

        if state == TaskState.COMPLETED:
            location = body.get("video_url") or body.get("url")
            return NormalizedStatus(
                state=state,
                result_location=self._absolute(location) if location else None,
                progress_percent=100,
            )
        if state == TaskState.FAILED:
            error = body.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return NormalizedStatus(state=state, error_message=message or "Generation failed")

        return NormalizedStatus(
            state=TaskState.PROCESSING,
            progress_percent=int(progress) if isinstance(progress, (int, float)) else None,
        )

    async def fetch_result_location(self, task_handle: str) -> str | None:
        """Follow the content endpoint's redirects without reading the video body."""
        url = f"{self.videos_url}/{task_handle}/content"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=True
            ) as client:
                async with client.stream("GET", url, headers=self.headers) as response:
                    if response.status_code >= 400:
                        logger.warning(
                            "vendor.result_location_missing",
                            tool=self.tool.value,
                            task_id=task_handle,
                            status_code=response.status_code,
                        )
                        return None
                    return str(response.url)
        except httpx.HTTPError as e:
            raise VendorUnavailable(f"Could not resolve result location: {e}") from e

    def _absolute(self, location: str) -> str:
        if location.startswith("http"):
            return location
        return f"{self.base_url}/{location.lstrip('/')}"


class Sora2Adapter(LaozhangVideoAdapter):
    tool = VendorTool.SORA2
    params_model = Sora2Params

    def __init__(self, *args: Any, credits_per_second: float = 1.0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.credits_per_second = credits_per_second

    def quote(self, params: ToolParams) -> int:
        params = params_as(params, Sora2Params)
        return ceil_credits(params.seconds, self.credits_per_second)

    def build_fields(self, params: ToolParams) -> dict[str, str]:
        params = params_as(params, Sora2Params)
        return {
            "model": SORA2_MODEL,
            "prompt": params.prompt,
            "size": params.size,
            "seconds": str(params.seconds),
        }


class Veo3Adapter(LaozhangVideoAdapter):
    tool = VendorTool.VEO3
    params_model = Veo3Params

    def __init__(
        self, *args: Any, credits_fast: int = 20, credits_standard: int = 35, **kwargs: Any
    ):
        super().__init__(*args, **kwargs)
        self.credits_fast = credits_fast
        self.credits_standard = credits_standard

    def quote(self, params: ToolParams) -> int:
        params = params_as(params, Veo3Params)
        return self.credits_fast if params.speed == "fast" else self.credits_standard

    def build_fields(self, params: ToolParams) -> dict[str, str]:
        params = params_as(params, Veo3Params)
        return {"model": params.model_name(), "prompt": params.prompt}


class NanoBananaAdapter(VendorAdapter):
    tool = VendorTool.NANOBANANA
    params_model = NanoBananaParams
    result_content_type = "image/png"

    def __init__(
        self,
        *args: Any,
        credits: int = 7,
        generation_timeout: float = 60.0,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.credits = credits
        self.generation_timeout = generation_timeout
        self.generate_url = f"{self.base_url}/v1beta/models/{NANOBANANA_MODEL}:generateContent"

    def quote(self, params: ToolParams) -> int:
        return self.credits

    async def create_task(self, params: ToolParams, context: TaskContext) -> str:
        params = params_as(params, NanoBananaParams)
        parts: list[dict[str, Any]] = [{"text": params.prompt}]
        for reference in params.reference_images:
            media = await load_media(
                reference,
                self.media_policy.max_inline_bytes,
                timeout=self.timeout,
                transport=self.transport,
            )
            parts.append(
                {
                    "inline_data": {
                        "mime_type": media.mime_type,
                        "data": base64.b64encode(media.data).decode("ascii"),
                    }
                }
            )

        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": {
                    "aspectRatio": params.aspect_ratio,
                    "imageSize": params.resolution,
                },
            },
        }
        response = await self._request(
            "POST",
            self.generate_url,
            idempotent=False,
            json=payload,
            timeout=self.generation_timeout,
        )

        inline = self._first_inline_image(json_body(response))
        if inline is None:
            raise VendorRejected("No image in response")

        mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
        try:
            image = base64.b64decode(inline["data"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise VendorRejected("Vendor returned undecodable image data") from e

        key = result_key(context.owner_id, context.generation_id, mime_type)
        await self.blob_store.put_bytes(key, image, mime_type)

        logger.info(
            "vendor.image_generated",
            tool=self.tool.value,
            generation_id=str(context.generation_id),
            size_bytes=len(image),
            reference_images=len(params.reference_images),
        )
        return key

    async def get_status(self, task_handle: str) -> NormalizedStatus:
        return NormalizedStatus(
            state=TaskState.COMPLETED,
            result_location=self.blob_store.public_url(task_handle),
            progress_percent=100,
        )

    @staticmethod
    def _first_inline_image(body: dict[str, Any]) -> dict[str, Any] | None:
        candidates = body.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return inline
        return None
