"""Playlist bundle wire model, asset naming, and export assembly.

A bundle is the JSON description of one playlist and its songs. Binary payloads
never travel inside it; they are separate assets addressed by relative names
("locators") that the payload fetchers resolve against a directory or a base
URL.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from playlistz.errors import BundleFormatError
from playlistz.models import Playlist, Song, normalize_sha

MIME_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/flac": "flac",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}
_EXTENSION_MIMES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}
_EXTENSION_RE = re.compile(r"^\.?[A-Za-z0-9]{1,5}$")
_UNSAFE_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

PLAYLIST_COVER_STEM = "playlist-cover"
BUNDLE_FILENAME = "playlist.json"


def extension_for_mime(mime_type: str | None) -> str:
    return MIME_EXTENSIONS.get((mime_type or "").lower(), "bin")


def mime_for_name(name: str, default: str = "application/octet-stream") -> str:
    suffix = PurePosixPath(name).suffix.lstrip(".").lower()
    return _EXTENSION_MIMES.get(suffix, default)


def is_extension(value: str) -> bool:
    return bool(_EXTENSION_RE.match(value))


def playlist_cover_locator(image_hash_or_extension: str | None) -> str | None:
    """Asset name of a playlist cover from its bundle reference."""
    if not image_hash_or_extension:
        return None
    if is_extension(image_hash_or_extension):
        return f"{PLAYLIST_COVER_STEM}.{image_hash_or_extension.lstrip('.').lower()}"
    return image_hash_or_extension


def song_cover_locator(audio_name: str, image_extension: str | None) -> str | None:
    if not image_extension or not audio_name:
        return None
    stem = PurePosixPath(audio_name).stem
    return f"{stem}-cover.{image_extension.lstrip('.').lower()}"


def safe_filename(name: str, fallback: str) -> str:
    """Make `name` usable as a flat asset name."""
    cleaned = _UNSAFE_CHARS_RE.sub("_", name).strip().strip(".")
    return cleaned[:120] or fallback


@dataclass(frozen=True)
class BundlePlaylist:
    id: str
    title: str
    description: str = ""
    rev: int = 0
    image_hash_or_extension: str | None = None

    @property
    def image_locator(self) -> str | None:
        return playlist_cover_locator(self.image_hash_or_extension)


@dataclass(frozen=True)
class BundleSong:
    id: str
    title: str = ""
    artist: str = ""
    album: str = ""
    duration: float = 0.0
    original_filename: str = ""
    safe_filename: str = ""
    file_size: int = 0
    mime_type: str = ""
    sha: str | None = None
    image_extension: str | None = None

    @property
    def audio_locator(self) -> str | None:
        return self.safe_filename or self.original_filename or None

    @property
    def image_locator(self) -> str | None:
        return song_cover_locator(self.audio_locator or "", self.image_extension)


@dataclass(frozen=True)
class Bundle:
    """One playlist and its ordered song descriptors."""

    playlist: BundlePlaylist
    songs: tuple[BundleSong, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> Bundle:
        """Validate and convert the camelCase wire form.

        Raises `BundleFormatError` when the playlist header or a song id is
        missing; optional fields fall back to defaults.
        """
        if not isinstance(data, dict):
            raise BundleFormatError("Bundle must be a JSON object.")
        raw_playlist = data.get("playlist")
        if not isinstance(raw_playlist, dict):
            raise BundleFormatError("Bundle is missing its playlist header.")
        playlist_id = raw_playlist.get("id")
        if not isinstance(playlist_id, str) or not playlist_id:
            raise BundleFormatError("Bundle playlist has no id.")
        rev = raw_playlist.get("rev", 0)
        if rev is None:
            rev = 0
        if isinstance(rev, bool) or not isinstance(rev, int) or rev < 0:
            raise BundleFormatError(
                "Bundle playlist rev must be a non-negative integer.",
                details={"playlist_id": playlist_id, "rev": rev},
            )
        playlist = BundlePlaylist(
            id=playlist_id,
            title=_text(raw_playlist.get("title")),
            description=_text(raw_playlist.get("description")),
            rev=rev,
            image_hash_or_extension=_text(raw_playlist.get("imageHashOrExtension"))
            or None,
        )

        raw_songs = data.get("songs", [])
        if not isinstance(raw_songs, list):
            raise BundleFormatError(
                "Bundle songs must be a list.", details={"playlist_id": playlist_id}
            )
        songs = []
        for index, raw_song in enumerate(raw_songs):
            if not isinstance(raw_song, dict):
                raise BundleFormatError(
                    "Bundle song entry must be an object.",
                    details={"playlist_id": playlist_id, "index": index},
                )
            song_id = raw_song.get("id")
            if not isinstance(song_id, str) or not song_id:
                raise BundleFormatError(
                    "Bundle song entry has no id.",
                    details={"playlist_id": playlist_id, "index": index},
                )
            songs.append(
                BundleSong(
                    id=song_id,
                    title=_text(raw_song.get("title")),
                    artist=_text(raw_song.get("artist")),
                    album=_text(raw_song.get("album")),
                    duration=_number(raw_song.get("duration")),
                    original_filename=_text(raw_song.get("originalFilename")),
                    safe_filename=_text(raw_song.get("safeFilename")),
                    file_size=int(_number(raw_song.get("fileSize"))),
                    mime_type=_text(raw_song.get("mimeType")),
                    sha=normalize_sha(raw_song.get("sha")),
                    image_extension=_text(raw_song.get("imageExtension")) or None,
                )
            )
        return cls(playlist=playlist, songs=tuple(songs))

    def to_dict(self) -> dict[str, Any]:
        playlist: dict[str, Any] = {
            "id": self.playlist.id,
            "title": self.playlist.title,
            "description": self.playlist.description,
            "rev": self.playlist.rev,
        }
        if self.playlist.image_hash_or_extension:
            playlist["imageHashOrExtension"] = self.playlist.image_hash_or_extension
        songs = []
        for song in self.songs:
            entry: dict[str, Any] = {
                "id": song.id,
                "title": song.title,
                "artist": song.artist,
                "album": song.album,
                "duration": song.duration,
                "originalFilename": song.original_filename,
                "safeFilename": song.safe_filename,
                "fileSize": song.file_size,
                "mimeType": song.mime_type,
            }
            if song.sha:
                entry["sha"] = song.sha
            if song.image_extension:
                entry["imageExtension"] = song.image_extension
            songs.append(entry)
        return {"playlist": playlist, "songs": songs}


@dataclass(frozen=True)
class ExportedBundle:
    """A bundle plus the out-of-band assets its locators name."""

    bundle: Bundle
    assets: dict[str, bytes] = field(default_factory=dict, repr=False)


def build_export(playlist: Playlist, songs: list[Song]) -> ExportedBundle:
    """Assemble the wire bundle and asset map for `playlist` as stored.

    `songs` must already be in playlist order. Songs whose payload is not
    loaded are still described; only bytes that are present become assets.
    """
    assets: dict[str, bytes] = {}
    image_ref: str | None = None
    if playlist.image_data is not None:
        image_ref = extension_for_mime(playlist.image_type)
        assets[f"{PLAYLIST_COVER_STEM}.{image_ref}"] = playlist.image_data

    used_names: set[str] = set()
    descriptors = []
    for song in songs:
        fallback = f"{song.id}.{extension_for_mime(song.mime_type)}"
        name = safe_filename(song.original_filename, fallback)
        if name in used_names or name.startswith(PLAYLIST_COVER_STEM):
            name = f"{song.id}-{name}"
        used_names.add(name)
        image_extension = (
            extension_for_mime(song.image_type) if song.image_data is not None else None
        )
        descriptor = BundleSong(
            id=song.id,
            title=song.title,
            artist=song.artist,
            album=song.album,
            duration=song.duration,
            original_filename=song.original_filename,
            safe_filename=name,
            file_size=song.file_size,
            mime_type=song.mime_type,
            sha=song.sha,
            image_extension=image_extension,
        )
        descriptors.append(descriptor)
        if song.audio_data is not None:
            assets[name] = song.audio_data
        cover = descriptor.image_locator
        if cover is not None and song.image_data is not None:
            assets[cover] = song.image_data

    bundle = Bundle(
        playlist=BundlePlaylist(
            id=playlist.id,
            title=playlist.title,
            description=playlist.description,
            rev=playlist.rev,
            image_hash_or_extension=image_ref,
        ),
        songs=tuple(descriptors),
    )
    return ExportedBundle(bundle=bundle, assets=assets)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value or value < 0 or value == float("inf"):
        return 0.0
    return float(value)


def read_bundle_file(directory: Path) -> Bundle:
    """Parse `<directory>/playlist.json` into a `Bundle`."""
    path = Path(directory) / BUNDLE_FILENAME
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise BundleFormatError(
            f"Cannot read bundle file {path}: {exc}", details={"path": str(path)}
        ) from exc
    return parse_bundle_json(raw, source=str(path))


def parse_bundle_json(raw: str | bytes, *, source: str) -> Bundle:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BundleFormatError(
            f"Bundle file {source} is not valid JSON: {exc}",
            details={"path": source},
        ) from exc
    return Bundle.from_dict(data)


def write_bundle_dir(exported: ExportedBundle, directory: Path) -> list[Path]:
    """Write `playlist.json` and every asset into `directory`; return written paths."""
    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)
    written = []
    for name, data in exported.assets.items():
        path = target / name
        path.write_bytes(data)
        written.append(path)
    manifest = target / BUNDLE_FILENAME
    manifest.write_text(
        json.dumps(exported.bundle.to_dict(), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    written.append(manifest)
    return written
