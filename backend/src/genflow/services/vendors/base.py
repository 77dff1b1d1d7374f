"""Uniform vendor task adapter contract.

Every tool integration translates validated parameters into one vendor task
and maps the vendor's native status vocabulary onto TaskState. Unrecognised
vendor statuses map to PROCESSING so a poll never ends a generation by accident.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, TypeVar
from uuid import UUID

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from genflow.models.generation import VendorTool
from genflow.services.exceptions import (
    FetchFailed,
    InvalidGenerationRequest,
    VendorRejected,
    VendorUnavailable,
)
from genflow.services.generation.audio import measure_audio_seconds
from genflow.services.generation.media import InlineMedia, decode_data_url, is_data_url
from genflow.services.storage.blob_store import BlobStore
from genflow.services.storage.materializer import extension_for
from genflow.services.vendors.params import (
    MAX_AUDIO_SECONDS,
    AudioParams,
    MediaPolicy,
    ToolParams,
    ceil_credits,
)

logger = structlog.get_logger(__name__)

P = TypeVar("P", bound=ToolParams)

# Allowed gap between a caller-stated audio length and the measured one
AUDIO_DURATION_TOLERANCE_SECONDS = 1.0


class TaskState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class NormalizedStatus:
    """Vendor status mapped onto the common tri-state."""

    state: TaskState
    result_location: str | None = None
    error_message: str | None = None
    progress_percent: int | None = None


@dataclass(frozen=True)
class TaskContext:
    """Identifies the generation a vendor call is made for."""

    owner_id: str
    generation_id: UUID


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "vendor.retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
        sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


class VendorAdapter(ABC):
    """Base class for one tool's vendor integration.

    Subclasses declare the tool, its parameter model and which media fields
    must be hosted in the blob store before dispatch (vendors that fetch
    inputs by URL cannot accept inline payloads).
    """

    tool: ClassVar[VendorTool]
    params_model: ClassVar[type[ToolParams]]
    hosted_media_fields: ClassVar[tuple[str, ...]] = ()
    # Content type of the finished artifact when the vendor does not say
    result_content_type: ClassVar[str] = "video/mp4"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        blob_store: BlobStore,
        media_policy: MediaPolicy,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize adapter.

        Args:
            api_key: Vendor bearer credential
            base_url: Vendor API root
            blob_store: Storage for hosted inputs and synchronous results
            media_policy: Rules for caller-supplied media references
            timeout: Control-plane request timeout in seconds (default: 30s)
            retry_policy: Transient failure retry settings
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.blob_store = blob_store
        self.media_policy = media_policy
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.transport = transport

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def parse_params(self, raw: dict[str, Any], *, stored: bool = False) -> ToolParams:
        """Validate raw request parameters into the tool's parameter model.

        Args:
            raw: Request body or persisted request_parameters
            stored: Parameters come from our own database; media references
                were validated at intake and may be redacted placeholders

        Raises:
            InvalidGenerationRequest: If validation fails
        """
        context = {"media_policy": None if stored else self.media_policy}
        try:
            return self.params_model.model_validate(raw, context=context)
        except ValidationError as e:
            raise InvalidGenerationRequest(_format_validation_error(e)) from e

    async def measure_inputs(self, params: ToolParams) -> ToolParams:
        """Fill in priced quantities that must be read from the inputs themselves.

        Runs at intake, before anything is charged. Tools priced purely from
        their parameters return params unchanged.
        """
        return params

    @abstractmethod
    def quote(self, params: ToolParams) -> int:
        """Credits charged for params. Deterministic and always a whole number."""

    async def prepare(self, params: ToolParams, context: TaskContext) -> ToolParams:
        """Host inline media in the blob store for vendors that fetch inputs by URL.

        Returns:
            Params with inline payloads replaced by system-owned URLs
        """
        updates: dict[str, Any] = {}
        for field in self.hosted_media_fields:
            value = getattr(params, field)
            if isinstance(value, str) and is_data_url(value):
                media = decode_data_url(value, self.media_policy.max_inline_bytes)
                key = (
                    f"inputs/{context.owner_id}/{context.generation_id}/"
                    f"{field}{extension_for(media.mime_type)}"
                )
                updates[field] = await self.blob_store.put_bytes(key, media.data, media.mime_type)
                logger.info(
                    "vendor.inline_media_hosted",
                    tool=self.tool.value,
                    field=field,
                    size_bytes=len(media.data),
                )
        return params.model_copy(update=updates) if updates else params

    @abstractmethod
    async def create_task(self, params: ToolParams, context: TaskContext) -> str:
        """Create exactly one vendor task.

        Returns:
            Vendor task handle

        Raises:
            VendorRejected: Vendor declined the request
            VendorUnavailable: Vendor unreachable after retries
        """

    @abstractmethod
    async def get_status(self, task_handle: str) -> NormalizedStatus:
        """Poll the vendor task.

        Raises:
            VendorUnavailable: Status could not be retrieved
        """

    async def fetch_result_location(self, task_handle: str) -> str | None:
        """Resolve the result URL when get_status reported completion without one."""
        return None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a vendor request with transient-failure retry.

        Network failures (timeouts, connection resets) are retried with
        exponential backoff. Retryable HTTP statuses (429, 5xx) are retried
        only for idempotent calls; a task-creation POST that reached the
        vendor is never repeated. 4xx responses raise VendorRejected at once.
        """

        def should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, VendorUnavailable):
                return False
            return exc.status_code is None or idempotent

        policy = self.retry_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.initial_delay, max=policy.max_delay),
            retry=retry_if_exception(should_retry),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(self._send_once, method, url, **kwargs)

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise VendorUnavailable(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.TransportError as e:
            raise VendorUnavailable(f"Network error: {e}") from e

        # Error classification
        if response.status_code == 429 or response.status_code >= 500:
            raise VendorUnavailable(
                f"Vendor unavailable ({response.status_code}): {self.error_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise VendorRejected(self.error_detail(response))
        return response

    def error_detail(self, response: httpx.Response) -> str:
        """Human-readable error from a vendor error response."""
        try:
            body = response.json()
        except ValueError:
            return f"API error: {response.status_code} {response.text[:200]}".strip()

        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            for key in ("message", "msg", "error", "reason", "detail"):
                if isinstance(body.get(key), str) and body[key]:
                    return body[key]
        return f"API error: {response.status_code}"


class AudioPricedAdapter(VendorAdapter):
    """Adapter for tools charged per second of the caller's audio track."""

    def __init__(self, *args: Any, credits_per_second: float = 1.0, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.credits_per_second = credits_per_second

    async def measure_inputs(self, params: ToolParams) -> ToolParams:
        """Read the audio length from the track and record it in the parameters.

        Raises:
            InvalidGenerationRequest: Audio unreachable or unreadable, longer than
                the limit, or contradicting a caller-stated duration
        """
        params = params_as(params, AudioParams)
        try:
            media = await load_media(
                params.audio,
                self.media_policy.max_inline_bytes,
                timeout=self.timeout,
                transport=self.transport,
            )
        except FetchFailed as e:
            raise InvalidGenerationRequest(f"audio: {e}") from e

        measured = measure_audio_seconds(media.data)
        if measured > MAX_AUDIO_SECONDS:
            raise InvalidGenerationRequest(
                f"audio: {measured:.1f}s exceeds the {MAX_AUDIO_SECONDS}s limit"
            )

        declared = params.audio_duration_seconds
        if declared is not None and abs(declared - measured) > AUDIO_DURATION_TOLERANCE_SECONDS:
            raise InvalidGenerationRequest(
                f"audio_duration_seconds: {declared}s does not match the audio ({measured:.1f}s)"
            )

        logger.info(
            "vendor.audio_measured",
            tool=self.tool.value,
            seconds=round(measured, 3),
            declared_seconds=declared,
        )
        return params.model_copy(update={"audio_duration_seconds": round(measured, 3)})

    def quote(self, params: ToolParams) -> int:
        seconds = params_as(params, AudioParams).audio_duration_seconds
        if seconds is None:
            raise InvalidGenerationRequest("audio_duration_seconds: audio has not been measured")
        return ceil_credits(seconds, self.credits_per_second)


def params_as(params: ToolParams, model: type[P]) -> P:
    """Narrow params to an adapter's own parameter model."""
    if not isinstance(params, model):
        raise TypeError(f"Expected {model.__name__}, got {type(params).__name__}")
    return params


def json_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body, treating garbage as a transient vendor fault."""
    try:
        body = response.json()
    except ValueError as e:
        raise VendorUnavailable(f"Vendor returned invalid JSON: {response.text[:200]}") from e
    if not isinstance(body, dict):
        raise VendorUnavailable("Vendor returned an unexpected response shape")
    return body


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "body"
        messages.append(f"{location}: {item['msg']}")
    return "; ".join(messages)


async def load_media(
    reference: str,
    max_bytes: int,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> InlineMedia:
    """Bytes of a media reference, decoding data URLs and downloading https URLs.

    Raises:
        FetchFailed: If the URL could not be downloaded or is too large
        InvalidGenerationRequest: If an inline payload is malformed
    """
    if is_data_url(reference):
        try:
            return decode_data_url(reference, max_bytes)
        except ValueError as e:
            raise InvalidGenerationRequest(str(e)) from e

    chunks: list[bytes] = []
    size = 0
    try:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, follow_redirects=True
        ) as client:
            async with client.stream("GET", reference) as response:
                if response.status_code >= 400:
                    raise FetchFailed(
                        f"Media reference download returned HTTP {response.status_code}"
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise FetchFailed(f"Media reference exceeds {max_bytes} bytes")

                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > max_bytes:
                        raise FetchFailed(f"Media reference exceeds {max_bytes} bytes")
                    chunks.append(chunk)

                content_type = response.headers.get("content-type") or "image/png"
    except httpx.HTTPError as e:
        raise FetchFailed(f"Could not download media reference: {e}") from e

    return InlineMedia(mime_type=content_type.split(";")[0].strip(), data=b"".join(chunks))
