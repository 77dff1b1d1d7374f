"""Audio track length, read from the media itself.

Tools priced per second of audio are charged from this measurement, never
from a duration the caller states.
"""

import io

import mutagen
from mutagen import MutagenError

from genflow.services.exceptions import InvalidGenerationRequest


def measure_audio_seconds(data: bytes) -> float:
    """Playback length of an encoded audio file (MP3, WAV, M4A, OGG, FLAC, ...).

    Raises:
        InvalidGenerationRequest: If the bytes are not a readable audio file
    """
    try:
        audio = mutagen.File(io.BytesIO(data))
    except MutagenError as e:
        raise InvalidGenerationRequest(f"audio: unreadable audio file ({e})") from e

    length = getattr(audio.info, "length", None) if audio is not None else None
    if not length or length <= 0:
        raise InvalidGenerationRequest("audio: could not determine the audio duration")
    return float(length)
