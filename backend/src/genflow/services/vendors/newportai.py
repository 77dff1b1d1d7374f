"""NewportAI LipSync adapter.

- POST {base}/async/lipsync     create task from a source video and an audio track
- POST {base}/getAsyncResult    poll status with {"taskId": ...}

Responses use an envelope {"code": 0, "message": ..., "data": ...}; a non-zero
code is an error. Task status is numeric: 1/2 processing, 3 done, 4 failed.
"""

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
from genflow.services.vendors.params import LipSyncParams, ToolParams

logger = structlog.get_logger(__name__)

LIPSYNC_STATUS_MAP = {
    1: TaskState.PROCESSING,
    2: TaskState.PROCESSING,
    3: TaskState.COMPLETED,
    4: TaskState.FAILED,
}


class LipSyncAdapter(AudioPricedAdapter):
    tool = VendorTool.LIPSYNC
    params_model = LipSyncParams
    hosted_media_fields = ("video", "audio")

    async def create_task(self, params: ToolParams, context: TaskContext) -> str:
        params = params_as(params, LipSyncParams)
        payload = {
            "srcVideoUrl": params.video,
            "audioUrl": params.audio,
            "videoParams": params.video_params.model_dump(),
        }
        response = await self._request(
            "POST", f"{self.base_url}/async/lipsync", idempotent=False, json=payload
        )
        body = json_body(response)
        if body.get("code") != 0:
            raise VendorRejected(body.get("message") or "LipSync task was not accepted")

        data = body.get("data") or {}
        task_id = data.get("taskId")
        if not task_id:
            raise VendorRejected("No task ID in response")

        logger.info("vendor.task_created", tool=self.tool.value, task_id=task_id)
        return str(task_id)

    async def get_status(self, task_handle: str) -> NormalizedStatus:
        response = await self._request(
            "POST", f"{self.base_url}/getAsyncResult", json={"taskId": task_handle}
        )
        body = json_body(response)
        if body.get("code") != 0:
            # The lookup failed, not the task
            raise VendorUnavailable(body.get("message") or "Failed to get LipSync status")

        data = body.get("data") or {}
        task = data.get("task") or {}
        native = task.get("status")
        state = LIPSYNC_STATUS_MAP.get(native, TaskState.PROCESSING)  # type: ignore[arg-type]

        if state == TaskState.COMPLETED:
            videos = data.get("videos") or []
            location = videos[0].get("videoUrl") if videos else None
            return NormalizedStatus(state=state, result_location=location, progress_percent=100)
        if state == TaskState.FAILED:
            return NormalizedStatus(state=state, error_message=task.get("reason") or "Task failed")
        return NormalizedStatus(state=TaskState.PROCESSING)
