"""Validated request parameters for each generation tool.

Media fields accept an https URL on an allowed host or a base64 data URL.
The active MediaPolicy is passed as pydantic validation context; parameters
reloaded from our own database are validated without it.
"""

import math
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from genflow.services.generation.media import is_data_url, validate_media_reference
from genflow.services.generation.prompt_validator import validate_prompt

MAX_AUDIO_SECONDS = 600
MAX_REFERENCE_IMAGES = 14


@dataclass(frozen=True)
class MediaPolicy:
    allowed_domains: list[str] = field(default_factory=list)
    max_inline_bytes: int = 20 * 1024 * 1024


def _check_media(value: str, info: ValidationInfo) -> str:
    policy = (info.context or {}).get("media_policy")
    if policy is None:
        return value
    return validate_media_reference(value, policy.allowed_domains, policy.max_inline_bytes)


Prompt = Annotated[str, AfterValidator(validate_prompt)]
MediaRef = Annotated[str, AfterValidator(_check_media)]


def ceil_credits(seconds: float, rate: float) -> int:
    """Per-second price rounded up to the next whole credit."""
    # round() first so 12 * 1.1 == 13.200000000000001 does not become 14
    return max(1, math.ceil(round(seconds * rate, 6)))


class ToolParams(BaseModel):
    """Base for tool parameter models."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    def storable(self) -> dict[str, Any]:
        """JSON-safe dump with inline payloads replaced by a short placeholder."""

        def redact(value: Any) -> Any:
            if isinstance(value, str) and is_data_url(value):
                return value.split(",", 1)[0] + ",<inline>"
            if isinstance(value, list):
                return [redact(item) for item in value]
            return value

        return {key: redact(value) for key, value in self.model_dump(mode="json").items()}


class Sora2Params(ToolParams):
    prompt: Prompt
    size: Literal["1280x720", "720x1280"] = "1280x720"
    seconds: int = Field(default=15, ge=1, le=25)
    image: Optional[MediaRef] = None


class Veo3Params(ToolParams):
    prompt: Prompt
    aspect_ratio: Literal["portrait", "landscape"] = "portrait"
    speed: Literal["fast", "standard"] = "fast"
    image: Optional[MediaRef] = None

    def model_name(self) -> str:
        """Vendor model name: veo-3.1[-landscape][-fast][-fl]."""
        name = "veo-3.1"
        if self.aspect_ratio == "landscape":
            name += "-landscape"
        if self.speed == "fast":
            name += "-fast"
        if self.image:
            name += "-fl"
        return name


class LipSyncVideoParams(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    video_width: int = Field(default=0, ge=0)
    video_height: int = Field(default=0, ge=0)
    video_enhance: int = Field(default=1, ge=0, le=1)


class AudioParams(ToolParams):
    """Parameters of tools priced per second of the audio track.

    audio_duration_seconds is filled in from the audio itself at intake. A
    value sent by the caller is only compared against that measurement.
    """

    audio: MediaRef
    audio_duration_seconds: Optional[float] = Field(default=None, gt=0, le=MAX_AUDIO_SECONDS)


class LipSyncParams(AudioParams):
    video: MediaRef
    video_params: LipSyncVideoParams = Field(default_factory=LipSyncVideoParams)


class InfiniteTalkParams(AudioParams):
    image: MediaRef
    resolution: Literal["480p", "720p"] = "720p"
    prompt: Optional[str] = None
    seed: int = -1

    @field_validator("prompt")
    @classmethod
    def sanitize_optional_prompt(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return validate_prompt(value)


class NanoBananaParams(ToolParams):
    prompt: Prompt
    aspect_ratio: Literal[
        "21:9", "16:9", "4:3", "3:2", "1:1", "9:16", "3:4", "2:3", "5:4", "4:5"
    ] = "1:1"
    resolution: Literal["1K", "2K", "4K"] = "1K"
    reference_images: list[MediaRef] = Field(default_factory=list, max_length=MAX_REFERENCE_IMAGES)
