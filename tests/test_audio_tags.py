"""Tests for audio tag probing and metadata defaults."""

from __future__ import annotations

import io
import wave

import pytest

from playlistz.services.audio_tags import (
    UNKNOWN_ALBUM,
    UNKNOWN_ARTIST,
    AudioTags,
    read_audio_tags,
    resolve_song_metadata,
)


def _wav_bytes(seconds: float, rate: int = 8000) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(rate)
        handle.writeframes(b"\x00\x00" * int(seconds * rate))
    return buffer.getvalue()


def test_wav_duration_is_read() -> None:
    tags = read_audio_tags(_wav_bytes(1.5))
    assert tags.duration == pytest.approx(1.5, abs=0.01)
    assert tags.error is None


def test_unrecognized_bytes_report_error() -> None:
    tags = read_audio_tags(b"definitely not audio")
    assert tags.error
    assert tags.duration is None
    assert tags.title is None


def test_metadata_defaults_from_filename() -> None:
    metadata = resolve_song_metadata("/music/01 Intro.mp3", AudioTags())
    assert metadata.title == "01 Intro"
    assert metadata.artist == UNKNOWN_ARTIST
    assert metadata.album == UNKNOWN_ALBUM
    assert metadata.duration == 0.0


def test_metadata_precedence() -> None:
    tags = AudioTags(title="Tagged", artist="Tag Artist", album="Tag Album", duration=3.0)
    metadata = resolve_song_metadata(
        "song.mp3", tags, title="  Explicit ", artist="", duration=float("nan")
    )
    assert metadata.title == "Explicit"
    assert metadata.artist == "Tag Artist"
    assert metadata.album == "Tag Album"
    assert metadata.duration == 3.0


def test_metadata_without_filename_is_untitled() -> None:
    assert resolve_song_metadata("", AudioTags()).title == "Untitled"
