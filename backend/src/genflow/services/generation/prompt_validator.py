"""Prompt sanitization and validation for generation requests."""

import re

MAX_PROMPT_LENGTH = 1000

# Control characters except tab (\x09), newline (\x0A) and carriage return (\x0D)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_prompt(prompt: str) -> str:
    """Strip control characters and surrounding whitespace."""
    return _CONTROL_CHARS.sub("", prompt).strip()


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Text prompt from the caller

    Returns:
        Sanitized prompt

    Raises:
        ValueError: If prompt is not a string, empty after sanitization,
            or exceeds 1000 characters
    """
    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    sanitized = sanitize_prompt(prompt)

    if not sanitized:
        raise ValueError("Prompt cannot be empty")

    if len(sanitized) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(sanitized)})"
        )

    return sanitized
