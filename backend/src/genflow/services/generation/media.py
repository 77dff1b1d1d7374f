"""Media reference validation and inline payload decoding.

A media reference is either an https URL on an allow-listed host or a
base64 data URL carrying image, video or audio bytes.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from urllib.parse import urlparse

MAX_URL_LENGTH = 2048

_DATA_URL = re.compile(r"^data:((?:image|video|audio)/[\w.+-]+);base64,(.*)$", re.DOTALL)


@dataclass(frozen=True)
class InlineMedia:
    mime_type: str
    data: bytes


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def decode_data_url(value: str, max_bytes: int) -> InlineMedia:
    """Decode a data:(image|video|audio)/...;base64 payload.

    Raises:
        ValueError: If the payload is malformed, of another media type, or too large
    """
    match = _DATA_URL.match(value)
    if not match:
        raise ValueError("Inline media must be a base64 data URL of an image, video or audio")

    encoded = match.group(2)
    # Reject before decoding; base64 expands 3 bytes into 4 characters
    if len(encoded) * 3 // 4 > max_bytes + 3:
        raise ValueError(f"Inline media exceeds {max_bytes} bytes")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Inline media is not valid base64") from e

    if not data:
        raise ValueError("Inline media is empty")
    if len(data) > max_bytes:
        raise ValueError(f"Inline media exceeds {max_bytes} bytes")
    return InlineMedia(mime_type=match.group(1).lower(), data=data)


def host_allowed(hostname: str, allowed_domains: list[str]) -> bool:
    """Exact host match or any subdomain of an allowed domain."""
    hostname = hostname.lower()
    return any(hostname == domain or hostname.endswith("." + domain) for domain in allowed_domains)


def validate_media_reference(value: str, allowed_domains: list[str], max_inline_bytes: int) -> str:
    """Validate a media reference and return it unchanged.

    Raises:
        ValueError: If the reference is neither an allowed https URL nor a valid data URL
    """
    if not isinstance(value, str) or not value:
        raise ValueError("Media reference cannot be empty")

    if is_data_url(value):
        decode_data_url(value, max_inline_bytes)
        return value

    if len(value) > MAX_URL_LENGTH:
        raise ValueError(f"Media URL exceeds {MAX_URL_LENGTH} characters")

    parsed = urlparse(value)
    if parsed.scheme != "https" or not parsed.hostname:
        raise ValueError("Media URL must use https")
    if not host_allowed(parsed.hostname, allowed_domains):
        raise ValueError(f"Media host not allowed: {parsed.hostname}")
    return value
