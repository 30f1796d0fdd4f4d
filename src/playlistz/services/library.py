"""Playlist library facade: the operations exposed to UI and CLI collaborators.

Every write goes through `QueryHub.mutate`/`delete`, so live queries in this
process see it before the call returns and other processes sharing the
database file receive a change notice.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any
from uuid import uuid4

from playlistz.errors import NotFound
from playlistz.models import (
    PLAYLISTS,
    SONGS,
    Entity,
    EntityRef,
    Playlist,
    PlaylistUpdate,
    Song,
    SongUpdate,
    now_ms,
)
from playlistz.services.audio_tags import read_audio_tags, resolve_song_metadata
from playlistz.services.broadcast import BroadcastChannel, SqliteBroadcastChannel
from playlistz.services.bundle import Bundle, ExportedBundle, build_export
from playlistz.services.bundle_merge import BundleImporter, ImportResult
from playlistz.services.object_store import ObjectStore, Transaction, open_store
from playlistz.services.payload_fetch import PayloadFetcher
from playlistz.services.payload_loader import (
    PayloadLoader,
    PendingLoadResult,
    ProgressCallback,
)
from playlistz.services.query_hub import LiveQuery, QueryHub
from playlistz.settings_store import LibrarySettings
from playlistz.utils.async_utils import run_blocking
from playlistz.utils.hashing import sha256_hex_async

logger = logging.getLogger(__name__)


class PlaylistLibrary:
    """High-level playlist/song operations over one library database."""

    def __init__(
        self,
        hub: QueryHub,
        *,
        fetcher: PayloadFetcher | None = None,
        load_concurrency: int = 4,
    ) -> None:
        self._hub = hub
        self._importer = BundleImporter(hub)
        self._load_concurrency = load_concurrency
        self._loader: PayloadLoader | None = None
        if fetcher is not None:
            self.use_fetcher(fetcher)

    @classmethod
    async def open(
        cls,
        db_path: Path,
        *,
        channel: BroadcastChannel | None = None,
        fetcher: PayloadFetcher | None = None,
        settings: LibrarySettings | None = None,
        origin: str | None = None,
    ) -> PlaylistLibrary:
        """Open (or reuse) the store at `db_path` and start the change channel.

        Without an explicit `channel`, notices travel through the database
        file itself so every process opening the same path is connected.
        """
        settings = settings or LibrarySettings()
        store = await open_store(db_path)
        if channel is None:
            channel = SqliteBroadcastChannel(
                store.db_path,
                poll_interval_s=settings.notice_poll_interval_s,
                retention_s=settings.notice_retention_s,
            )
        await channel.start()
        hub = QueryHub(store, channel, origin=origin)
        logger.info("Playlist library opened at %s (origin=%s)", db_path, hub.origin)
        return cls(hub, fetcher=fetcher, load_concurrency=settings.load_concurrency)

    async def aclose(self) -> None:
        """Stop live queries and the channel; the cached store stays open."""
        await self._hub.aclose()
        await self._hub.channel.aclose()

    @property
    def hub(self) -> QueryHub:
        return self._hub

    @property
    def store(self) -> ObjectStore:
        return self._hub.store

    @property
    def loader(self) -> PayloadLoader | None:
        return self._loader

    def use_fetcher(self, fetcher: PayloadFetcher) -> None:
        """Resolve payload locators through `fetcher` from now on."""
        self._loader = PayloadLoader(
            self._hub, fetcher, concurrency=self._load_concurrency
        )

    # Reads

    async def get_playlist(self, playlist_id: str) -> Playlist | None:
        playlist = await self.store.get(PLAYLISTS, playlist_id)
        return playlist if isinstance(playlist, Playlist) else None

    async def get_song(self, song_id: str) -> Song | None:
        song = await self.store.get(SONGS, song_id)
        return song if isinstance(song, Song) else None

    async def list_playlists(self) -> list[Playlist]:
        playlists = await self.store.get_all(PLAYLISTS, include_payloads=False)
        return [item for item in playlists if isinstance(item, Playlist)]

    async def get_playlist_songs(self, playlist_id: str) -> list[Song]:
        """Songs of a playlist in `song_ids` order."""
        return await self.store.run_transaction(
            lambda tx: _playlist_songs(tx, playlist_id),
            write=False,
            op_name="get_playlist_songs",
        )

    # Playlists

    async def create_playlist(
        self,
        title: str,
        description: str = "",
        *,
        image_data: bytes | None = None,
        image_type: str | None = None,
        playlist_id: str | None = None,
    ) -> Playlist:
        now = now_ms()
        playlist = Playlist(
            id=playlist_id or str(uuid4()),
            title=title,
            description=description,
            created_at=now,
            updated_at=now,
            image_data=image_data,
            image_type=image_type if image_data is not None else None,
        )

        def _create(current: Entity | None) -> Playlist:
            if current is not None:
                raise ValueError(f"Playlist {playlist.id} already exists")
            return playlist

        await self._hub.mutate(PLAYLISTS, playlist.id, _create)
        logger.info("Created playlist %s (%s)", playlist.id, title)
        return playlist

    async def update_playlist(
        self, playlist_id: str, update: PlaylistUpdate
    ) -> Playlist:
        def _update(current: Entity | None) -> Playlist:
            return update.apply(_require_playlist(current, playlist_id))

        playlist = await self._hub.mutate(PLAYLISTS, playlist_id, _update)
        assert isinstance(playlist, Playlist)
        return playlist

    async def delete_playlist(self, playlist_id: str) -> bool:
        """Delete a playlist and all of its songs; return whether it existed."""
        # Songs go first, in their own transaction, so observers never see a
        # playlist that references deleted songs.
        removed_songs = await self._hub.delete_by_index(
            SONGS, "playlist_id", playlist_id
        )
        existed = await self._hub.delete(PLAYLISTS, playlist_id)
        logger.info(
            "Deleted playlist %s (%s songs)", playlist_id, len(removed_songs)
        )
        return existed > 0

    # Songs

    async def add_song_to_playlist(
        self,
        playlist_id: str,
        data: bytes,
        filename: str,
        *,
        mime_type: str = "",
        title: str | None = None,
        artist: str | None = None,
        album: str | None = None,
        duration: float | None = None,
        image_data: bytes | None = None,
        image_type: str | None = None,
    ) -> Song:
        """Store `data` as a new song at the end of the playlist.

        Missing title/artist/album/duration come from the audio tags, then from
        the filename stem and "Unknown Artist"/"Unknown Album".
        """
        playlist = await self.get_playlist(playlist_id)
        if playlist is None:
            raise NotFound(
                f"Playlist {playlist_id} does not exist.",
                details={"playlist_id": playlist_id},
            )
        sha = await sha256_hex_async(data)
        tags = await run_blocking(read_audio_tags, data)
        metadata = resolve_song_metadata(
            filename, tags, title=title, artist=artist, album=album, duration=duration
        )
        now = now_ms()
        song = Song(
            id=str(uuid4()),
            playlist_id=playlist_id,
            title=metadata.title,
            artist=metadata.artist,
            album=metadata.album,
            duration=metadata.duration,
            position=len(playlist.song_ids),
            mime_type=mime_type,
            original_filename=filename,
            file_size=len(data),
            sha=sha,
            audio_data=data,
            image_data=image_data,
            image_type=image_type if image_data is not None else None,
            created_at=now,
            updated_at=now,
        )
        await self._hub.mutate(SONGS, song.id, lambda _current: song)

        def _append(current: Entity | None) -> Playlist:
            existing = _require_playlist(current, playlist_id)
            return replace(
                existing, song_ids=(*existing.song_ids, song.id), updated_at=now
            )

        try:
            await self._hub.mutate(PLAYLISTS, playlist_id, _append)
        except NotFound:
            # Playlist vanished between the check and the append.
            await self._hub.delete(SONGS, song.id)
            raise
        logger.info("Added song %s to playlist %s", song.id, playlist_id)
        return song

    async def update_song(self, song_id: str, update: SongUpdate) -> Song:
        def _update(current: Entity | None) -> Song:
            if not isinstance(current, Song):
                raise NotFound(
                    f"Song {song_id} does not exist.", details={"song_id": song_id}
                )
            return update.apply(current)

        song = await self._hub.mutate(SONGS, song_id, _update)
        assert isinstance(song, Song)
        return song

    async def remove_song_from_playlist(self, playlist_id: str, song_id: str) -> None:
        """Delete a song and drop it from its playlist.

        Raises `NotFound` when the song is missing or belongs to another
        playlist; nothing is written in that case.
        """
        song = await self._hub.store.get(SONGS, song_id)
        if not isinstance(song, Song) or song.playlist_id != playlist_id:
            raise NotFound(
                f"Song {song_id} is not in playlist {playlist_id}.",
                details={"playlist_id": playlist_id, "song_id": song_id},
            )

        def _remove(current: Entity | None) -> Playlist:
            existing = _require_playlist(current, playlist_id)
            return replace(
                existing,
                song_ids=tuple(item for item in existing.song_ids if item != song_id),
                updated_at=now_ms(),
            )

        await self._hub.mutate(PLAYLISTS, playlist_id, _remove)
        await self._hub.delete(SONGS, song_id)

    async def reorder_songs(
        self, playlist_id: str, from_index: int, to_index: int
    ) -> Playlist:
        """Move one song within the playlist and renumber the songs in between."""

        def _move(current: Entity | None) -> Playlist:
            existing = _require_playlist(current, playlist_id)
            song_ids = list(existing.song_ids)
            for index in (from_index, to_index):
                if not 0 <= index < len(song_ids):
                    raise ValueError(
                        f"Index {index} out of range for playlist of {len(song_ids)}"
                    )
            moved = song_ids.pop(from_index)
            song_ids.insert(to_index, moved)
            return replace(existing, song_ids=tuple(song_ids), updated_at=now_ms())

        playlist = await self._hub.mutate(PLAYLISTS, playlist_id, _move)
        assert isinstance(playlist, Playlist)
        low, high = sorted((from_index, to_index))
        for position in range(low, high + 1):
            await self._set_position(playlist.song_ids[position], position)
        return playlist

    async def _set_position(self, song_id: str, position: int) -> None:
        song = await self.get_song(song_id)
        if song is None or song.position == position:
            return
        await self._hub.mutate(
            SONGS,
            song_id,
            lambda current: SongUpdate(position=position).apply(
                current if isinstance(current, Song) else song
            ),
        )

    # Live queries

    async def subscribe_to_playlists(
        self, fields: Sequence[str] | None = None
    ) -> LiveQuery:
        return await self._hub.subscribe(PLAYLISTS, fields=fields)

    async def subscribe_to_playlist_songs(
        self, playlist_id: str, fields: Sequence[str] | None = None
    ) -> LiveQuery:
        return await self._hub.subscribe(
            SONGS,
            filter_fn=lambda song: song.playlist_id == playlist_id,
            fields=fields,
        )

    # Bundles and payloads

    async def import_bundle(self, bundle: Bundle | dict[str, Any]) -> ImportResult:
        if not isinstance(bundle, Bundle):
            bundle = Bundle.from_dict(bundle)
        return await self._importer.import_bundle(bundle)

    async def export_bundle(self, playlist_id: str) -> ExportedBundle:
        """Bump the playlist revision by one and describe it as a bundle."""

        def _bump(current: Entity | None) -> Playlist:
            existing = _require_playlist(current, playlist_id)
            return replace(existing, rev=existing.rev + 1, updated_at=now_ms())

        playlist = await self._hub.mutate(PLAYLISTS, playlist_id, _bump)
        assert isinstance(playlist, Playlist)
        songs = await self.get_playlist_songs(playlist_id)
        hashed = []
        for song in songs:
            if song.sha is None and song.audio_data is not None:
                song = await self._backfill_sha(song)
            hashed.append(song)
        logger.info("Exported playlist %s at rev %s", playlist_id, playlist.rev)
        return build_export(playlist, hashed)

    async def _backfill_sha(self, song: Song) -> Song:
        assert song.audio_data is not None
        digest = await sha256_hex_async(song.audio_data)
        updated = await self._hub.mutate(
            SONGS,
            song.id,
            lambda current: replace(
                current if isinstance(current, Song) else song, sha=digest
            ),
        )
        assert isinstance(updated, Song)
        return updated

    async def load_payload(self, ref: EntityRef) -> bool:
        return await self._require_loader().load_payload(ref)

    async def load_pending(
        self, playlist_id: str, *, on_progress: ProgressCallback | None = None
    ) -> PendingLoadResult:
        return await self._require_loader().load_pending(
            playlist_id, on_progress=on_progress
        )

    def _require_loader(self) -> PayloadLoader:
        if self._loader is None:
            raise RuntimeError("No payload fetcher configured for this library")
        return self._loader


def _require_playlist(current: Entity | None, playlist_id: str) -> Playlist:
    if not isinstance(current, Playlist):
        raise NotFound(
            f"Playlist {playlist_id} does not exist.",
            details={"playlist_id": playlist_id},
        )
    return current


def _playlist_songs(tx: Transaction, playlist_id: str) -> list[Song]:
    playlist = tx.get(PLAYLISTS, playlist_id, include_payloads=False)
    if not isinstance(playlist, Playlist):
        raise NotFound(
            f"Playlist {playlist_id} does not exist.",
            details={"playlist_id": playlist_id},
        )
    songs = []
    for song_id in playlist.song_ids:
        song = tx.get(SONGS, song_id)
        if isinstance(song, Song):
            songs.append(song)
    return songs
