"""Tests for object store schema creation."""

from __future__ import annotations

import sqlite3

import pytest

from playlistz.db.schema import SCHEMA_VERSION, create_schema


def test_create_schema_on_fresh_database(tmp_path) -> None:
    with sqlite3.connect(tmp_path / "library.sqlite") as conn:
        create_schema(conn)
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        indexes = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index'"
            )
        }
    assert version == SCHEMA_VERSION
    assert "idx_songs_playlist_id" in indexes
    assert "idx_change_notices_created" in indexes


def test_create_schema_is_idempotent(tmp_path) -> None:
    with sqlite3.connect(tmp_path / "library.sqlite") as conn:
        create_schema(conn)
        conn.execute(
            "INSERT INTO playlists (id, doc) VALUES ('p1', '{\"id\": \"p1\"}')"
        )
        create_schema(conn)
        count = conn.execute("SELECT COUNT(*) FROM playlists").fetchone()[0]
    assert count == 1


def test_create_schema_rejects_newer_version(tmp_path) -> None:
    with sqlite3.connect(tmp_path / "library.sqlite") as conn:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        with pytest.raises(RuntimeError, match="newer than supported"):
            create_schema(conn)
