"""Revision + content-hash merge of incoming playlist bundles.

`rev` decides whether the bundle is looked at at all; per-song `sha` decides
whether an existing audio payload can be kept. Payloads are never fetched
here: songs that cannot keep their bytes are marked `needs_payload_load` and
left for `PayloadLoader`.

Songs stored locally but absent from the bundle are left in place. A bundle
song whose id is already owned by another playlist is rejected before any
write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from playlistz.errors import BundleFormatError
from playlistz.models import PLAYLISTS, SONGS, Entity, Playlist, Song, now_ms
from playlistz.services.bundle import Bundle, BundlePlaylist, BundleSong
from playlistz.services.object_store import Transaction
from playlistz.services.query_hub import QueryHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportResult:
    """Stored state after an import; `changed` is False for a revision no-op."""

    playlist: Playlist
    songs: tuple[Song, ...]
    changed: bool


class BundleImporter:
    def __init__(self, hub: QueryHub) -> None:
        self._hub = hub

    async def import_bundle(self, bundle: Bundle) -> ImportResult:
        incoming = bundle.playlist
        existing = await self._hub.store.get(PLAYLISTS, incoming.id)
        if existing is not None and not isinstance(existing, Playlist):
            raise TypeError(f"Stored record {incoming.id!r} is not a playlist")

        if existing is not None and incoming.rev <= existing.rev:
            logger.info(
                "Skipping import of playlist %s: incoming rev %s <= stored rev %s",
                incoming.id,
                incoming.rev,
                existing.rev,
            )
            songs = await self._hub.store.run_transaction(
                lambda tx: _ordered_songs(tx, existing),
                write=False,
                op_name="import_noop_read",
            )
            return ImportResult(playlist=existing, songs=songs, changed=False)

        await self._hub.store.run_transaction(
            lambda tx: _check_song_owners(tx, incoming.id, bundle.songs),
            write=False,
            op_name="import_owner_check",
        )
        if existing is None:
            logger.info(
                "Importing new playlist %s (rev=%s, songs=%s)",
                incoming.id,
                incoming.rev,
                len(bundle.songs),
            )
            # Empty song list first so no stored playlist references a missing song.
            await self._hub.mutate(
                PLAYLISTS, incoming.id, lambda current: _new_playlist(incoming, current)
            )
        else:
            logger.info(
                "Merging playlist %s from rev %s to rev %s",
                incoming.id,
                existing.rev,
                incoming.rev,
            )

        kept = 0
        stale = 0
        songs: list[Song] = []
        for position, descriptor in enumerate(bundle.songs):
            song = await self._hub.mutate(
                SONGS,
                descriptor.id,
                _song_merger(
                    incoming.id, descriptor, position, fresh=existing is None
                ),
            )
            assert isinstance(song, Song)
            if song.needs_payload_load:
                stale += 1
            else:
                kept += 1
            songs.append(song)

        song_ids = tuple(descriptor.id for descriptor in bundle.songs)
        playlist = await self._hub.mutate(
            PLAYLISTS,
            incoming.id,
            lambda current: _merge_playlist(incoming, song_ids, current),
        )
        assert isinstance(playlist, Playlist)
        logger.info(
            "Imported playlist %s rev %s: %s songs kept, %s pending payload",
            incoming.id,
            incoming.rev,
            kept,
            stale,
        )
        return ImportResult(playlist=playlist, songs=tuple(songs), changed=True)


def _check_song_owners(
    tx: Transaction, playlist_id: str, descriptors: tuple[BundleSong, ...]
) -> None:
    for descriptor in descriptors:
        stored = tx.get(SONGS, descriptor.id, include_payloads=False)
        if isinstance(stored, Song) and stored.playlist_id != playlist_id:
            raise BundleFormatError(
                f"Song {descriptor.id} already belongs to playlist "
                f"{stored.playlist_id}.",
                details={
                    "song_id": descriptor.id,
                    "playlist_id": playlist_id,
                    "owner": stored.playlist_id,
                },
            )


def _ordered_songs(tx: Transaction, playlist: Playlist) -> tuple[Song, ...]:
    songs = []
    for song_id in playlist.song_ids:
        song = tx.get(SONGS, song_id)
        if isinstance(song, Song):
            songs.append(song)
    return tuple(songs)


def _new_playlist(incoming: BundlePlaylist, current: Entity | None) -> Playlist:
    now = now_ms()
    base = current if isinstance(current, Playlist) else None
    return Playlist(
        id=incoming.id,
        title=incoming.title,
        description=incoming.description,
        song_ids=(),
        rev=base.rev if base is not None else 0,
        created_at=base.created_at if base is not None else now,
        updated_at=now,
    )


def _merge_playlist(
    incoming: BundlePlaylist, song_ids: tuple[str, ...], current: Entity | None
) -> Playlist:
    now = now_ms()
    base = current if isinstance(current, Playlist) else Playlist(
        id=incoming.id, title=incoming.title, created_at=now
    )
    merged = replace(
        base,
        title=incoming.title,
        description=incoming.description,
        song_ids=song_ids,
        rev=max(base.rev, incoming.rev),
        updated_at=now,
    )
    image_ref = incoming.image_hash_or_extension
    if image_ref is None:
        return merged
    if image_ref == base.image_ref and base.image_data is not None:
        return merged
    return replace(
        merged,
        image_data=None,
        image_ref=image_ref,
        payload_locator=incoming.image_locator,
        needs_payload_load=True,
    )


def _song_merger(
    playlist_id: str, descriptor: BundleSong, position: int, *, fresh: bool = False
) -> Callable[[Entity | None], Song]:
    def _merge(current: Entity | None) -> Song:
        now = now_ms()
        # A new playlist never inherits stored payloads.
        existing = current if isinstance(current, Song) and not fresh else None
        metadata: dict[str, Any] = {
            "playlist_id": playlist_id,
            "title": descriptor.title,
            "artist": descriptor.artist,
            "album": descriptor.album,
            "duration": descriptor.duration,
            "position": position,
            "mime_type": descriptor.mime_type,
            "original_filename": descriptor.original_filename,
            "file_size": descriptor.file_size,
            "payload_locator": descriptor.audio_locator,
            "image_locator": descriptor.image_locator,
            "updated_at": now,
        }
        if (
            existing is not None
            and existing.sha is not None
            and descriptor.sha is not None
            and existing.sha == descriptor.sha
        ):
            return replace(existing, sha=descriptor.sha, **metadata)
        return Song(
            id=descriptor.id,
            sha=descriptor.sha,
            needs_payload_load=True,
            created_at=existing.created_at if existing is not None else now,
            **metadata,
        )

    return _merge
