"""End-to-end tests for the playlist library facade."""

from __future__ import annotations

import asyncio

import pytest

from playlistz.errors import NotFound
from playlistz.models import PLAYLISTS, SONGS, EntityRef, PlaylistUpdate, SongUpdate
from playlistz.services.audio_tags import UNKNOWN_ALBUM, UNKNOWN_ARTIST
from playlistz.services.bundle import read_bundle_file, write_bundle_dir
from playlistz.services.fake_broadcast import LocalBroadcastBus
from playlistz.services.library import PlaylistLibrary
from playlistz.services.payload_fetch import FileFetcher
from playlistz.utils.hashing import sha256_hex


def _run(coro):
    return asyncio.run(coro)


async def _open(db_path, bus: LocalBroadcastBus | None = None, **kwargs):
    channel = (bus or LocalBroadcastBus()).channel()
    return await PlaylistLibrary.open(db_path, channel=channel, **kwargs)


def test_export_import_round_trip_between_libraries(tmp_path) -> None:
    bundle_dir = tmp_path / "bundle"

    async def _exercise():
        source = await _open(tmp_path / "source.sqlite")
        playlist = await source.create_playlist(
            "Road Trip", "Summer", image_data=b"cover", image_type="image/png"
        )
        assert playlist.rev == 0
        first = await source.add_song_to_playlist(playlist.id, b"one", "one.mp3")
        await source.add_song_to_playlist(playlist.id, b"two", "two.mp3")
        exported = await source.export_bundle(playlist.id)
        write_bundle_dir(exported, bundle_dir)
        bundle = read_bundle_file(bundle_dir)

        target = await _open(
            tmp_path / "target.sqlite", fetcher=FileFetcher(bundle_dir)
        )
        imported = await target.import_bundle(bundle)
        pending = await target.get_playlist_songs(playlist.id)
        loaded = await target.load_pending(playlist.id)
        songs = await target.get_playlist_songs(playlist.id)
        cover = await target.get_playlist(playlist.id)
        again = await target.import_bundle(bundle)

        await source.aclose()
        await target.aclose()
        return (
            exported.bundle.playlist.rev,
            first,
            imported,
            pending,
            loaded,
            songs,
            cover,
            again,
        )

    rev, first, imported, pending, loaded, songs, cover, again = _run(_exercise())
    assert rev == 1
    assert imported.changed
    assert imported.playlist.rev == 1
    assert all(song.needs_payload_load for song in pending)
    assert (loaded.loaded, loaded.failed) == (3, 0)
    assert [song.audio_data for song in songs] == [b"one", b"two"]
    assert songs[0].id == first.id
    assert songs[0].sha == sha256_hex(b"one")
    assert cover.image_data == b"cover"
    assert cover.image_type == "image/png"
    assert not again.changed


def test_newer_revision_reloads_only_changed_songs(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        playlist = await library.create_playlist("Mix", playlist_id="p1")
        keep = await library.add_song_to_playlist("p1", b"keep", "keep.mp3")
        swap = await library.add_song_to_playlist("p1", b"swap", "swap.mp3")
        exported = (await library.export_bundle(playlist.id)).bundle.to_dict()
        exported["playlist"]["rev"] = 2
        exported["songs"][1]["sha"] = sha256_hex(b"new audio")
        exported["songs"][1]["title"] = "Swapped"
        result = await library.import_bundle(exported)
        return keep, swap, result

    keep, swap, result = _run(_exercise())
    assert result.changed
    assert result.playlist.rev == 2
    kept, replaced = result.songs
    assert kept.id == keep.id
    assert kept.audio_data == b"keep"
    assert not kept.needs_payload_load
    assert replaced.id == swap.id
    assert replaced.title == "Swapped"
    assert replaced.audio_data is None
    assert replaced.needs_payload_load


def test_add_song_fills_defaults(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        first = await library.add_song_to_playlist(
            "p1", b"not really audio", "My Tune.mp3", mime_type="audio/mpeg"
        )
        second = await library.add_song_to_playlist(
            "p1", b"x", "b.mp3", artist="Someone"
        )
        return first, second, await library.get_playlist("p1")

    first, second, playlist = _run(_exercise())
    assert first.title == "My Tune"
    assert first.artist == UNKNOWN_ARTIST
    assert first.album == UNKNOWN_ALBUM
    assert first.sha == sha256_hex(b"not really audio")
    assert first.file_size == len(b"not really audio")
    assert (first.position, second.position) == (0, 1)
    assert second.artist == "Someone"
    assert playlist.song_ids == (first.id, second.id)


def test_add_song_to_missing_playlist(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.add_song_to_playlist("missing", b"x", "x.mp3")

    with pytest.raises(NotFound):
        _run(_exercise())


def test_remove_song_fires_song_subscription_once(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        first = await library.add_song_to_playlist("p1", b"a", "a.mp3")
        second = await library.add_song_to_playlist("p1", b"b", "b.mp3")
        query = await library.subscribe_to_playlist_songs("p1", fields=["title"])
        calls: list[list] = []
        query.on_change(calls.append)
        await library.remove_song_from_playlist("p1", first.id)
        playlist = await library.get_playlist("p1")
        stored = await library.store.get_all(SONGS)
        return calls, second, playlist, stored

    calls, second, playlist, stored = _run(_exercise())
    assert calls == [[{"id": second.id, "title": "b"}]]
    assert playlist.song_ids == (second.id,)
    assert [song.id for song in stored] == [second.id]


def test_remove_song_through_wrong_playlist_raises(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        await library.create_playlist("Other", playlist_id="p2")
        song = await library.add_song_to_playlist("p2", b"a", "a.mp3")
        with pytest.raises(NotFound):
            await library.remove_song_from_playlist("p1", song.id)
        with pytest.raises(NotFound):
            await library.remove_song_from_playlist("p2", "missing")
        return (
            song,
            await library.get_playlist("p2"),
            await library.get_song(song.id),
        )

    song, p2, stored = _run(_exercise())
    assert p2.song_ids == (song.id,)
    assert stored is not None
    assert stored.playlist_id == "p2"


def test_delete_playlist_cascades_to_songs(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        await library.create_playlist("Other", playlist_id="p2")
        song = await library.add_song_to_playlist("p1", b"a", "a.mp3")
        other = await library.add_song_to_playlist("p2", b"b", "b.mp3")
        deleted = await library.delete_playlist("p1")
        deleted_again = await library.delete_playlist("p1")
        return (
            deleted,
            deleted_again,
            await library.get_song(song.id),
            await library.get_song(other.id),
            [playlist.id for playlist in await library.list_playlists()],
        )

    deleted, deleted_again, song, other, remaining = _run(_exercise())
    assert deleted
    assert not deleted_again
    assert song is None
    assert other is not None
    assert remaining == ["p2"]


def test_reorder_updates_positions(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        songs = [
            await library.add_song_to_playlist("p1", name.encode(), f"{name}.mp3")
            for name in ("a", "b", "c")
        ]
        playlist = await library.reorder_songs("p1", 0, 2)
        ordered = await library.get_playlist_songs("p1")
        return songs, playlist, ordered

    songs, playlist, ordered = _run(_exercise())
    a, b, c = (song.id for song in songs)
    assert playlist.song_ids == (b, c, a)
    assert [(song.id, song.position) for song in ordered] == [(b, 0), (c, 1), (a, 2)]


def test_reorder_rejects_out_of_range(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        await library.add_song_to_playlist("p1", b"a", "a.mp3")
        await library.reorder_songs("p1", 0, 5)

    with pytest.raises(ValueError, match="out of range"):
        _run(_exercise())


def test_updates_apply_and_missing_records_raise(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        song = await library.add_song_to_playlist("p1", b"a", "a.mp3")
        playlist = await library.update_playlist(
            "p1", PlaylistUpdate(title="Renamed")
        )
        updated = await library.update_song(song.id, SongUpdate(album="LP"))
        with pytest.raises(NotFound):
            await library.update_playlist("missing", PlaylistUpdate(title="x"))
        with pytest.raises(NotFound):
            await library.update_song("missing", SongUpdate(title="x"))
        return playlist, updated

    playlist, updated = _run(_exercise())
    assert playlist.title == "Renamed"
    assert playlist.description == ""
    assert updated.album == "LP"
    assert updated.title == "a"


def test_create_playlist_rejects_existing_id(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.create_playlist("Mix", playlist_id="p1")
        await library.create_playlist("Again", playlist_id="p1")

    with pytest.raises(ValueError, match="already exists"):
        _run(_exercise())


def test_playlist_subscription_sees_writes_from_other_library(tmp_path) -> None:
    bus = LocalBroadcastBus()
    db_path = tmp_path / "library.sqlite"

    async def _exercise():
        writer = await _open(db_path, bus)
        reader = await _open(db_path, bus)
        query = await reader.subscribe_to_playlists(fields=["title"])
        await writer.create_playlist("Shared", playlist_id="p1")
        await bus.flush()
        await reader.hub.wait_idle()
        return query.value

    assert _run(_exercise()) == [{"id": "p1", "title": "Shared"}]


def test_loading_requires_a_fetcher(tmp_path) -> None:
    async def _exercise():
        library = await _open(tmp_path / "library.sqlite")
        await library.load_payload(EntityRef(PLAYLISTS, "p1"))

    with pytest.raises(RuntimeError, match="fetcher"):
        _run(_exercise())
