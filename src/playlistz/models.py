"""Typed playlist/song records and their store-boundary coercion.

Records are immutable dataclasses. Metadata is persisted as a JSON document and
binary payloads (audio, cover images) in dedicated BLOB columns, so coercion is
split into `entity_document`/`entity_payloads` on write and
`coerce_entity` on read.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Union

Collection = Literal["playlists", "songs"]

PLAYLISTS: Collection = "playlists"
SONGS: Collection = "songs"
COLLECTIONS: tuple[Collection, ...] = (PLAYLISTS, SONGS)

PAYLOAD_FIELDS: dict[str, tuple[str, ...]] = {
    PLAYLISTS: ("image_data",),
    SONGS: ("audio_data", "image_data"),
}


def now_ms() -> int:
    """Return wall-clock time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def normalize_sha(value: Any) -> str | None:
    """Normalize a hex content hash; blank or non-string values mean "never hashed"."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


@dataclass(frozen=True)
class Playlist:
    """Playlist record; `song_ids` is the authoritative song order."""

    id: str
    title: str
    description: str = ""
    song_ids: tuple[str, ...] = ()
    rev: int = 0
    created_at: int = 0
    updated_at: int = 0
    image_data: bytes | None = field(default=None, repr=False)
    image_type: str | None = None
    image_ref: str | None = None
    needs_payload_load: bool = False
    payload_locator: str | None = None

    @property
    def has_payload(self) -> bool:
        return self.image_data is not None


@dataclass(frozen=True)
class Song:
    """Song record owned by exactly one playlist."""

    id: str
    playlist_id: str
    title: str = ""
    artist: str = ""
    album: str = ""
    duration: float = 0.0
    position: int = 0
    mime_type: str = ""
    original_filename: str = ""
    file_size: int = 0
    sha: str | None = None
    audio_data: bytes | None = field(default=None, repr=False)
    image_data: bytes | None = field(default=None, repr=False)
    image_type: str | None = None
    payload_locator: str | None = None
    image_locator: str | None = None
    needs_payload_load: bool = False
    created_at: int = 0
    updated_at: int = 0

    @property
    def has_payload(self) -> bool:
        return self.audio_data is not None


Entity = Union[Playlist, Song]


@dataclass(frozen=True)
class EntityRef:
    """Address of a single record, used by the payload loader."""

    collection: Collection
    id: str

    @classmethod
    def of(cls, entity: Entity) -> EntityRef:
        return cls(collection_of(entity), entity.id)


def collection_of(entity: Entity) -> Collection:
    if isinstance(entity, Playlist):
        return PLAYLISTS
    if isinstance(entity, Song):
        return SONGS
    raise TypeError(f"Unsupported entity type: {type(entity).__name__}")


def check_entity(collection: str, entity: object) -> None:
    """Reject writes whose record type does not belong to `collection`."""
    expected = {PLAYLISTS: Playlist, SONGS: Song}.get(collection)
    if expected is None:
        raise ValueError(f"Unknown collection: {collection!r}")
    if not isinstance(entity, expected):
        raise TypeError(
            f"Collection {collection!r} stores {expected.__name__} records, "
            f"got {type(entity).__name__}"
        )


def entity_document(entity: Entity) -> dict[str, Any]:
    """Return the JSON-serializable metadata document (payload fields excluded)."""
    payload_fields = PAYLOAD_FIELDS[collection_of(entity)]
    document: dict[str, Any] = {}
    for item in fields(entity):
        if item.name in payload_fields:
            continue
        value = getattr(entity, item.name)
        document[item.name] = list(value) if isinstance(value, tuple) else value
    return document


def entity_payloads(entity: Entity) -> dict[str, bytes | None]:
    return {
        name: getattr(entity, name) for name in PAYLOAD_FIELDS[collection_of(entity)]
    }


def coerce_entity(
    collection: str, document: Any, payloads: dict[str, bytes | None]
) -> Entity | None:
    """Coerce an untyped stored document into a typed record.

    Individual fields fall back to defaults when their stored type is wrong.
    Documents that are not objects or have no usable `id` are rejected.
    """
    if not isinstance(document, dict):
        return None
    record_id = document.get("id")
    if not isinstance(record_id, str) or not record_id:
        return None
    if collection == PLAYLISTS:
        return _coerce_playlist(record_id, document, payloads)
    if collection == SONGS:
        return _coerce_song(record_id, document, payloads)
    raise ValueError(f"Unknown collection: {collection!r}")


def _coerce_playlist(
    record_id: str, data: dict[str, Any], payloads: dict[str, bytes | None]
) -> Playlist:
    return Playlist(
        id=record_id,
        title=_str_or_default(data.get("title"), ""),
        description=_str_or_default(data.get("description"), ""),
        song_ids=_str_tuple(data.get("song_ids")),
        rev=max(0, _int_or_default(data.get("rev"), 0)),
        created_at=_int_or_default(data.get("created_at"), 0),
        updated_at=_int_or_default(data.get("updated_at"), 0),
        image_data=_bytes_or_none(payloads.get("image_data")),
        image_type=_str_or_none(data.get("image_type")),
        image_ref=_str_or_none(data.get("image_ref")),
        needs_payload_load=_bool_or_default(data.get("needs_payload_load"), False),
        payload_locator=_str_or_none(data.get("payload_locator")),
    )


def _coerce_song(
    record_id: str, data: dict[str, Any], payloads: dict[str, bytes | None]
) -> Song:
    return Song(
        id=record_id,
        playlist_id=_str_or_default(data.get("playlist_id"), ""),
        title=_str_or_default(data.get("title"), ""),
        artist=_str_or_default(data.get("artist"), ""),
        album=_str_or_default(data.get("album"), ""),
        duration=_float_or_default(data.get("duration"), 0.0),
        position=_int_or_default(data.get("position"), 0),
        mime_type=_str_or_default(data.get("mime_type"), ""),
        original_filename=_str_or_default(data.get("original_filename"), ""),
        file_size=_int_or_default(data.get("file_size"), 0),
        sha=normalize_sha(data.get("sha")),
        audio_data=_bytes_or_none(payloads.get("audio_data")),
        image_data=_bytes_or_none(payloads.get("image_data")),
        image_type=_str_or_none(data.get("image_type")),
        payload_locator=_str_or_none(data.get("payload_locator")),
        image_locator=_str_or_none(data.get("image_locator")),
        needs_payload_load=_bool_or_default(data.get("needs_payload_load"), False),
        created_at=_int_or_default(data.get("created_at"), 0),
        updated_at=_int_or_default(data.get("updated_at"), 0),
    )


@dataclass(frozen=True)
class PlaylistUpdate:
    """Partial playlist update: `None` leaves a field unchanged, anything else replaces it.

    `image_data` and `image_type` are replaced together whenever `image_data`
    is given.
    """

    title: str | None = None
    description: str | None = None
    song_ids: tuple[str, ...] | None = None
    image_data: bytes | None = field(default=None, repr=False)
    image_type: str | None = None

    def apply(self, playlist: Playlist, *, updated_at: int | None = None) -> Playlist:
        changes: dict[str, Any] = _changes(self, exclude=("image_data", "image_type"))
        if "song_ids" in changes:
            changes["song_ids"] = tuple(changes["song_ids"])
        if self.image_data is not None:
            changes["image_data"] = self.image_data
            changes["image_type"] = self.image_type
            changes["image_ref"] = None
            changes["needs_payload_load"] = False
        changes["updated_at"] = now_ms() if updated_at is None else updated_at
        return replace(playlist, **changes)


@dataclass(frozen=True)
class SongUpdate:
    """Partial song update with the same replace-or-ignore policy as `PlaylistUpdate`."""

    title: str | None = None
    artist: str | None = None
    album: str | None = None
    duration: float | None = None
    position: int | None = None
    mime_type: str | None = None
    original_filename: str | None = None
    image_data: bytes | None = field(default=None, repr=False)
    image_type: str | None = None

    def apply(self, song: Song, *, updated_at: int | None = None) -> Song:
        changes: dict[str, Any] = _changes(self, exclude=("image_data", "image_type"))
        if self.image_data is not None:
            changes["image_data"] = self.image_data
            changes["image_type"] = self.image_type
        changes["updated_at"] = now_ms() if updated_at is None else updated_at
        return replace(song, **changes)


def _changes(update: object, *, exclude: tuple[str, ...]) -> dict[str, Any]:
    return {
        item.name: getattr(update, item.name)
        for item in fields(update)  # type: ignore[arg-type]
        if item.name not in exclude and getattr(update, item.name) is not None
    }


def _str_or_default(value: Any, default: str) -> str:
    if isinstance(value, str):
        return value
    return default


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int_or_default(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return default


def _float_or_default(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        normalized = float(value)
        if math.isfinite(normalized) and normalized >= 0:
            return normalized
    return default


def _bool_or_default(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _bytes_or_none(value: Any) -> bytes | None:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return None


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in value if isinstance(item, str) and item)
