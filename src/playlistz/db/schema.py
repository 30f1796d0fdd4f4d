"""SQLite schema creation for the playlist object store.

`PRAGMA user_version` is the source of truth for schema state. Record metadata
lives in a JSON `doc` column; binary payloads live in BLOB columns so scans can
skip them.
"""

from __future__ import annotations

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_V1_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS playlists (
        id TEXT PRIMARY KEY,
        doc TEXT NOT NULL,
        image_data BLOB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS songs (
        id TEXT PRIMARY KEY,
        playlist_id TEXT NOT NULL,
        doc TEXT NOT NULL,
        audio_data BLOB,
        image_data BLOB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_notices (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        origin TEXT NOT NULL,
        collection TEXT NOT NULL,
        record_key TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_songs_playlist_id ON songs(playlist_id)",
    "CREATE INDEX IF NOT EXISTS idx_change_notices_created ON change_notices(created_at)",
]

# Secondary indexes exposed through `scan_by_index`: (collection, index) -> column.
INDEX_COLUMNS = {
    ("songs", "playlist_id"): "playlist_id",
}

# Payload columns per collection, in row order after `doc`.
PAYLOAD_COLUMNS = {
    "playlists": ("image_data",),
    "songs": ("audio_data", "image_data"),
}


def create_schema(conn: sqlite3.Connection) -> None:
    """Create or validate schema at `SCHEMA_VERSION` in the supplied connection."""
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version > SCHEMA_VERSION:
        raise RuntimeError(
            "Unsupported database schema version.\n"
            f"Likely cause: database version {version} is newer than supported version {SCHEMA_VERSION}.\n"
            "Next step: open this library with a compatible playlistz build."
        )
    if version == 0:
        _create_schema_v1(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


def _create_schema_v1(conn: sqlite3.Connection) -> None:
    """Create base v1 tables/indexes in a fresh database."""
    for statement in SCHEMA_V1_STATEMENTS:
        conn.execute(statement)
