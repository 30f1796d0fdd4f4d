"""Audio tag probing for songs added from raw bytes."""

from __future__ import annotations

import io
import logging
import math
import wave
from dataclasses import dataclass
from pathlib import PurePath

from mutagen import File as MutagenFile
from mutagen import MutagenError

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioTags:
    """Normalized metadata read from audio bytes; `None` means not found."""

    title: str | None = None
    artist: str | None = None
    album: str | None = None
    duration: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class SongMetadata:
    title: str
    artist: str
    album: str
    duration: float


def read_audio_tags(data: bytes) -> AudioTags:
    """Read tags with mutagen, falling back to the WAV header for duration."""
    tags = _read_with_mutagen(data)
    if tags.error is None:
        return tags
    wave_tags = _read_wave_fallback(data)
    if wave_tags is not None:
        return wave_tags
    logger.debug("No audio tags found: %s", tags.error)
    return tags


def resolve_song_metadata(
    filename: str,
    tags: AudioTags,
    *,
    title: str | None = None,
    artist: str | None = None,
    album: str | None = None,
    duration: float | None = None,
) -> SongMetadata:
    """Combine explicit values, probed tags and filename defaults, in that order."""
    stem = PurePath(filename).stem if filename else ""
    return SongMetadata(
        title=_clean_text(title) or tags.title or stem or "Untitled",
        artist=_clean_text(artist) or tags.artist or UNKNOWN_ARTIST,
        album=_clean_text(album) or tags.album or UNKNOWN_ALBUM,
        duration=_safe_duration(duration) or tags.duration or 0.0,
    )


def _read_with_mutagen(data: bytes) -> AudioTags:
    try:
        audio = MutagenFile(io.BytesIO(data), easy=True)
    except (MutagenError, ValueError, EOFError, OSError) as exc:
        return AudioTags(error=str(exc) or type(exc).__name__)
    if audio is None:
        return AudioTags(error="Unsupported or unreadable audio")
    found = audio.tags or {}
    return AudioTags(
        title=_first_tag(found, "title"),
        artist=_first_tag(found, "artist"),
        album=_first_tag(found, "album"),
        duration=_safe_duration(getattr(audio.info, "length", None)),
    )


def _read_wave_fallback(data: bytes) -> AudioTags | None:
    try:
        with wave.open(io.BytesIO(data), "rb") as handle:
            frame_rate = int(handle.getframerate())
            frame_count = int(handle.getnframes())
    except (wave.Error, EOFError):
        return None
    if frame_rate <= 0:
        return None
    return AudioTags(duration=frame_count / frame_rate)


def _first_tag(tags: object, key: str) -> str | None:
    try:
        value = tags[key]  # type: ignore[index]
    except (KeyError, TypeError, ValueError):
        return None
    if isinstance(value, list) and value:
        return _clean_text(value[0])
    return _clean_text(value)


def _clean_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _safe_duration(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    normalized = float(value)
    if not math.isfinite(normalized) or normalized <= 0:
        return None
    return normalized
