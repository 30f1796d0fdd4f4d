"""Lazy materialization of deferred audio and image payloads."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

from playlistz.errors import NotFound, PayloadFetchFailed
from playlistz.models import PLAYLISTS, SONGS, Entity, EntityRef, Playlist, Song
from playlistz.services.bundle import mime_for_name
from playlistz.services.payload_fetch import PayloadFetcher
from playlistz.services.query_hub import QueryHub
from playlistz.utils.hashing import sha256_hex_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingLoadResult:
    loaded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class LoadProgress:
    """Snapshot reported by `load_pending`.

    `phase` is "checking" before any fetch, "updating" after each finished
    load (with the item's title), and "complete" once every load settled.
    """

    current: int
    total: int
    title: str | None
    phase: str


ProgressCallback = Callable[[LoadProgress], None]


class _HashChanged(Exception):
    """The stored hash changed while a payload was being fetched."""


class PayloadLoader:
    """Fetches payloads for records marked `needs_payload_load`.

    Loads are idempotent: a record that already holds its payload returns
    `True` without fetching. Concurrent loads of one record, and concurrent
    fetches of one locator, share a single in-flight task.
    """

    def __init__(
        self,
        hub: QueryHub,
        fetcher: PayloadFetcher,
        *,
        concurrency: int = 4,
    ) -> None:
        self._hub = hub
        self._fetcher = fetcher
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._loads: dict[EntityRef, asyncio.Task[bool]] = {}
        self._fetches: dict[str, asyncio.Task[bytes]] = {}

    @property
    def fetcher(self) -> PayloadFetcher:
        return self._fetcher

    def in_flight(self) -> set[str]:
        return set(self._fetches)

    async def load_payload(self, ref: EntityRef) -> bool:
        task = self._loads.get(ref)
        if task is None:
            task = asyncio.create_task(self._load(ref))
            self._loads[ref] = task
            task.add_done_callback(lambda _: self._loads.pop(ref, None))
        return await asyncio.shield(task)

    async def load_pending(
        self, playlist_id: str, *, on_progress: ProgressCallback | None = None
    ) -> PendingLoadResult:
        """Load the playlist cover and every pending song of `playlist_id`."""
        playlist = await self._hub.store.get(PLAYLISTS, playlist_id)
        if not isinstance(playlist, Playlist):
            raise NotFound(
                f"Playlist {playlist_id} does not exist.",
                details={"playlist_id": playlist_id},
            )
        pending: list[tuple[EntityRef, str]] = []
        if playlist.needs_payload_load:
            pending.append((EntityRef(PLAYLISTS, playlist.id), playlist.title))
        songs = await self._hub.store.scan_by_index(SONGS, "playlist_id", playlist_id)
        pending.extend(
            (EntityRef(SONGS, song.id), song.title)
            for song in songs
            if isinstance(song, Song) and not song.has_payload
        )
        total = len(pending)
        done = 0

        def _report(phase: str, title: str | None = None) -> None:
            if on_progress is not None:
                on_progress(LoadProgress(done, total, title, phase))

        async def _tracked(ref: EntityRef, title: str) -> bool:
            nonlocal done
            ok = await self._load_bounded(ref)
            done += 1
            _report("updating", title)
            return ok

        _report("checking")
        if not pending:
            _report("complete")
            return PendingLoadResult()
        results = await asyncio.gather(
            *(_tracked(ref, title) for ref, title in pending)
        )
        _report("complete")
        loaded = sum(1 for ok in results if ok)
        result = PendingLoadResult(loaded=loaded, failed=len(results) - loaded)
        logger.info(
            "Loaded pending payloads for playlist %s: %s ok, %s failed",
            playlist_id,
            result.loaded,
            result.failed,
        )
        return result

    async def _load_bounded(self, ref: EntityRef) -> bool:
        async with self._semaphore:
            return await self.load_payload(ref)

    async def _load(self, ref: EntityRef) -> bool:
        entity = await self._hub.store.get(ref.collection, ref.id)
        if entity is None:
            logger.warning(
                "Cannot load payload for missing %s/%s", ref.collection, ref.id
            )
            return False
        if isinstance(entity, Song):
            return await self._load_song(entity)
        if isinstance(entity, Playlist):
            return await self._load_playlist_image(entity)
        return False

    async def _load_song(self, song: Song) -> bool:
        if song.has_payload:
            return True
        locator = song.payload_locator
        if not locator:
            logger.warning("Song %s has no payload locator", song.id)
            return False
        try:
            audio = await self._fetch_shared(locator)
        except PayloadFetchFailed as exc:
            logger.warning("Payload fetch failed for song %s: %s", song.id, exc)
            return False
        digest = await sha256_hex_async(audio)
        if song.sha is not None and digest != song.sha:
            logger.warning(
                "Payload for song %s does not match its content hash; leaving it pending",
                song.id,
                extra={
                    "event": "payload_hash_mismatch",
                    "locator": locator,
                    "expected_sha": song.sha,
                    "actual_sha": digest,
                },
            )
            return False
        cover: bytes | None = None
        if song.image_data is None and song.image_locator:
            try:
                cover = await self._fetch_shared(song.image_locator)
            except PayloadFetchFailed as exc:
                logger.info("Cover fetch failed for song %s: %s", song.id, exc)

        def _attach(current: Entity | None) -> Song:
            if not isinstance(current, Song):
                raise NotFound(
                    f"Song {song.id} was removed while loading.",
                    details={"song_id": song.id},
                )
            if current.sha is not None and current.sha != digest:
                raise _HashChanged(current.sha)
            changes: dict[str, object] = {
                "audio_data": audio,
                "sha": digest,
                "file_size": len(audio),
                "needs_payload_load": False,
            }
            if not current.mime_type:
                changes["mime_type"] = mime_for_name(locator)
            if cover is not None and current.image_data is None:
                changes["image_data"] = cover
                changes["image_type"] = mime_for_name(
                    song.image_locator or "", "image/jpeg"
                )
            return replace(current, **changes)  # type: ignore[arg-type]

        try:
            await self._hub.mutate(SONGS, song.id, _attach)
        except NotFound as exc:
            logger.info("%s", exc)
            return False
        except _HashChanged:
            logger.info(
                "Song %s changed its content hash while loading; leaving it pending",
                song.id,
            )
            return False
        return True

    async def _load_playlist_image(self, playlist: Playlist) -> bool:
        if playlist.has_payload or not playlist.needs_payload_load:
            return True
        locator = playlist.payload_locator
        if not locator:
            logger.warning("Playlist %s has no image locator", playlist.id)
            return False
        try:
            image = await self._fetch_shared(locator)
        except PayloadFetchFailed as exc:
            logger.warning("Image fetch failed for playlist %s: %s", playlist.id, exc)
            return False

        def _attach(current: Entity | None) -> Playlist:
            if not isinstance(current, Playlist):
                raise NotFound(
                    f"Playlist {playlist.id} was removed while loading.",
                    details={"playlist_id": playlist.id},
                )
            return replace(
                current,
                image_data=image,
                image_type=mime_for_name(locator, "image/jpeg"),
                needs_payload_load=False,
            )

        try:
            await self._hub.mutate(PLAYLISTS, playlist.id, _attach)
        except NotFound as exc:
            logger.info("%s", exc)
            return False
        return True

    async def _fetch_shared(self, locator: str) -> bytes:
        task = self._fetches.get(locator)
        if task is None:
            task = asyncio.create_task(self._fetcher.fetch(locator))
            self._fetches[locator] = task
            task.add_done_callback(lambda _: self._fetches.pop(locator, None))
        return await asyncio.shield(task)