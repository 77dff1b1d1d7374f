"""WaveSpeed InfiniteTalk adapter (talking video from an image and an audio track).

- POST {base}/wavespeed-ai/wan-2.2/speech-to-video   create prediction
- GET  {base}/predictions/{id}/result                poll status

v3 responses are usually wrapped as {"code": 200, "message": ..., "data": {...}},
but bare prediction objects are accepted too.
"""

from typing import Any

import structlog

from genflow.models.generation import VendorTool
from genflow.services.exceptions import VendorRejected, VendorUnavailable
from genflow.services.vendors.base import (
    AudioPricedAdapter,
    NormalizedStatus,
    TaskContext,
    TaskState,
    json_body,
    params_as,
)
from genflow.services.vendors.params import InfiniteTalkParams, ToolParams

logger = structlog.get_logger(__name__)

PREDICTION_STATUS_MAP = {
    "created": TaskState.PROCESSING,
    "processing": TaskState.PROCESSING,
    "completed": TaskState.COMPLETED,
    "failed": TaskState.FAILED,
}


def unwrap(body: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Split the optional v3 envelope into (prediction, envelope error)."""
    code = body.get("code")
    if code and code != 200:
        return {}, str(body.get("message") or body.get("error") or f"API error code {code}")
    data = body.get("data")
    return (data if isinstance(data, dict) else body), None


class InfiniteTalkAdapter(AudioPricedAdapter):
    tool = VendorTool.INFINITETALK
    params_model = InfiniteTalkParams
    hosted_media_fields = ("image", "audio")

    async def create_task(self, params: ToolParams, context: TaskContext) -> str:
        params = params_as(params, InfiniteTalkParams)
        payload: dict[str, Any] = {
            "image": params.image,
            "audio": params.audio,
            "resolution": params.resolution,
            "seed": params.seed,
        }
        if params.prompt:
            payload["prompt"] = params.prompt

        response = await self._request(
            "POST",
            f"{self.base_url}/wavespeed-ai/wan-2.2/speech-to-video",
            idempotent=False,
            json=payload,
        )
        body = json_body(response)
        prediction, error = unwrap(body)
        if error:
            raise VendorRejected(error)

        prediction_id = (
            prediction.get("id")
            or prediction.get("prediction_id")
            or body.get("prediction_id")
            or prediction.get("request_id")
        )
        if not prediction_id:
            raise VendorRejected("No prediction ID in response")

        logger.info("vendor.task_created", tool=self.tool.value, task_id=prediction_id)
        return str(prediction_id)

    async def get_status(self, task_handle: str) -> NormalizedStatus:
        response = await self._request("GET", f"{self.base_url}/predictions/{task_handle}/result")
        prediction, error = unwrap(json_body(response))
        if error:
            raise VendorUnavailable(error)

        native = str(prediction.get("status", "")).lower()
        state = PREDICTION_STATUS_MAP.get(native, TaskState.PROCESSING)

        if state == TaskState.COMPLETED:
            outputs = prediction.get("outputs") or []
            return NormalizedStatus(
                state=state,
                result_location=outputs[0] if outputs else None,
                progress_percent=100,
            )
        if state == TaskState.FAILED:
            return NormalizedStatus(
                state=state, error_message=prediction.get("error") or "Generation failed"
            )
        return NormalizedStatus(state=TaskState.PROCESSING)
