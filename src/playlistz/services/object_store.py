"""SQLite-backed object store for playlist and song records.

The public API is async but all DB work is synchronous and dispatched through
`run_blocking(...)`. Every operation runs inside one explicit SQLite
transaction; `run_transaction` lets callers group several reads and writes on
one or more collections into a single all-or-nothing unit.

Stores are cached process-wide per database path by `open_store`, and each
store owns one shared connection serialized by a lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from playlistz.db.schema import INDEX_COLUMNS, PAYLOAD_COLUMNS, create_schema
from playlistz.errors import StorageUnavailable
from playlistz.models import (
    COLLECTIONS,
    Entity,
    Song,
    check_entity,
    coerce_entity,
    entity_document,
    entity_payloads,
)
from playlistz.utils.async_utils import run_blocking

T = TypeVar("T")

_PERF_WARN_MS = 50.0
logger = logging.getLogger(__name__)


class Transaction:
    """Synchronous operations bound to one open SQLite transaction.

    Instances are only valid inside the callable passed to
    `ObjectStore.run_transaction`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.writes = 0

    def get(
        self, collection: str, key: str, *, include_payloads: bool = True
    ) -> Entity | None:
        row = self._conn.execute(
            f"SELECT {_select_columns(collection, include_payloads)} "
            f"FROM {_table(collection)} WHERE id = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_entity(collection, row)

    def get_all(
        self, collection: str, *, include_payloads: bool = True
    ) -> list[Entity]:
        rows = self._conn.execute(
            f"SELECT {_select_columns(collection, include_payloads)} "
            f"FROM {_table(collection)} ORDER BY rowid"
        ).fetchall()
        return _rows_to_entities(collection, rows)

    def scan_by_index(
        self,
        collection: str,
        index_name: str,
        value: str,
        *,
        include_payloads: bool = True,
    ) -> list[Entity]:
        column = INDEX_COLUMNS.get((collection, index_name))
        if column is None:
            raise ValueError(f"No index {index_name!r} on collection {collection!r}")
        rows = self._conn.execute(
            f"SELECT {_select_columns(collection, include_payloads)} "
            f"FROM {_table(collection)} WHERE {column} = ? ORDER BY rowid",
            (value,),
        ).fetchall()
        return _rows_to_entities(collection, rows)

    def put(self, collection: str, entity: Entity) -> None:
        """Upsert `entity` by id, overwriting the stored record in full."""
        check_entity(collection, entity)
        document = json.dumps(entity_document(entity), sort_keys=True)
        payloads = entity_payloads(entity)
        payload_columns = PAYLOAD_COLUMNS[collection]
        if isinstance(entity, Song):
            columns = ["id", "playlist_id", "doc", *payload_columns]
            values: list[Any] = [entity.id, entity.playlist_id, document]
        else:
            columns = ["id", "doc", *payload_columns]
            values = [entity.id, document]
        values.extend(payloads[name] for name in payload_columns)
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(
            f"{name} = excluded.{name}" for name in columns if name != "id"
        )
        self._conn.execute(
            f"""
            INSERT INTO {_table(collection)} ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {assignments}
            """,
            values,
        )
        self.writes += 1

    def delete(self, collection: str, key: str) -> bool:
        cursor = self._conn.execute(
            f"DELETE FROM {_table(collection)} WHERE id = ?", (key,)
        )
        self.writes += 1
        return bool(cursor.rowcount)

    def delete_by_index(self, collection: str, index_name: str, value: str) -> list[str]:
        """Delete every record whose index column equals `value`; return deleted ids."""
        column = INDEX_COLUMNS.get((collection, index_name))
        if column is None:
            raise ValueError(f"No index {index_name!r} on collection {collection!r}")
        rows = self._conn.execute(
            f"SELECT id FROM {_table(collection)} WHERE {column} = ?", (value,)
        ).fetchall()
        self._conn.execute(
            f"DELETE FROM {_table(collection)} WHERE {column} = ?", (value,)
        )
        self.writes += 1
        return [str(row["id"]) for row in rows]


class ObjectStore:
    """Durable transactional record store with async wrappers."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        await run_blocking(self._initialize_sync)

    async def close(self) -> None:
        await run_blocking(self.close_sync)

    def close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def run_transaction(
        self,
        fn: Callable[[Transaction], T],
        *,
        write: bool = True,
        op_name: str = "transaction",
    ) -> T:
        """Run `fn` inside one transaction; commit on return, roll back on raise.

        SQLite failures surface as `StorageUnavailable`; any other exception
        raised by `fn` rolls back and propagates unchanged.
        """
        return await run_blocking(self._run_transaction_sync, fn, write, op_name)

    async def get(self, collection: str, key: str) -> Entity | None:
        return await self.run_transaction(
            lambda tx: tx.get(collection, key), write=False, op_name="get"
        )

    async def get_all(
        self, collection: str, *, include_payloads: bool = True
    ) -> list[Entity]:
        return await self.run_transaction(
            lambda tx: tx.get_all(collection, include_payloads=include_payloads),
            write=False,
            op_name="get_all",
        )

    async def scan_by_index(
        self, collection: str, index_name: str, value: str
    ) -> list[Entity]:
        return await self.run_transaction(
            lambda tx: tx.scan_by_index(collection, index_name, value),
            write=False,
            op_name="scan_by_index",
        )

    async def put(self, collection: str, entity: Entity) -> None:
        await self.run_transaction(
            lambda tx: tx.put(collection, entity), op_name="put"
        )

    async def delete(self, collection: str, key: str) -> bool:
        return await self.run_transaction(
            lambda tx: tx.delete(collection, key), op_name="delete"
        )

    def _connect(self) -> sqlite3.Connection:
        """Create the shared SQLite connection configured for multi-process use."""
        conn = sqlite3.connect(
            self._db_path,
            timeout=30,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _initialize_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = self._connect()
            except (OSError, sqlite3.Error) as exc:
                raise StorageUnavailable(
                    f"Cannot open object store at {self._db_path}: {exc}",
                    details={"db_path": str(self._db_path)},
                ) from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                create_schema(conn)
                conn.execute("COMMIT")
            except (RuntimeError, sqlite3.Error) as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                conn.close()
                raise StorageUnavailable(
                    f"Cannot prepare object store schema at {self._db_path}: {exc}",
                    details={"db_path": str(self._db_path)},
                ) from exc
            journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
            logger.info(
                "Object store opened at %s (journal_mode=%s)",
                self._db_path,
                journal_mode,
            )
            self._conn = conn

    def _run_transaction_sync(
        self, fn: Callable[[Transaction], T], write: bool, op_name: str
    ) -> T:
        start = time.perf_counter()
        with self._lock:
            conn = self._conn
            if conn is None:
                raise StorageUnavailable(
                    "Object store is not open.",
                    details={"db_path": str(self._db_path), "operation": op_name},
                )
            tx = Transaction(conn)
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                result = fn(tx)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback_quietly(conn)
                raise StorageUnavailable(
                    f"Transaction aborted during {op_name}: {exc}",
                    details={"db_path": str(self._db_path), "operation": op_name},
                ) from exc
            except BaseException:
                _rollback_quietly(conn)
                raise
        _log_slow_db_op(op_name, start=start, writes=tx.writes)
        return result


_STORES: dict[str, ObjectStore] = {}
_PENDING: dict[str, asyncio.Future[ObjectStore]] = {}


async def open_store(db_path: Path) -> ObjectStore:
    """Return the process-wide store for `db_path`, opening it on first use.

    Concurrent first calls share one in-flight setup instead of racing to open
    duplicate connections.
    """
    key = _normalize_path(Path(db_path))
    store = _STORES.get(key)
    if store is not None and store.is_open:
        return store
    pending = _PENDING.get(key)
    if pending is not None and not pending.get_loop().is_closed():
        return await asyncio.shield(pending)

    future: asyncio.Future[ObjectStore] = asyncio.get_running_loop().create_future()
    _PENDING[key] = future
    store = ObjectStore(Path(db_path))
    try:
        await store.initialize()
    except asyncio.CancelledError:
        _PENDING.pop(key, None)
        future.cancel()
        raise
    except Exception as exc:
        _PENDING.pop(key, None)
        future.set_exception(exc)
        # Mark retrieved so a setup nobody else awaited does not warn at GC.
        future.exception()
        raise
    _STORES[key] = store
    _PENDING.pop(key, None)
    future.set_result(store)
    return store


def reset_store_cache() -> None:
    """Close and forget every cached store (test isolation helper)."""
    for store in list(_STORES.values()):
        store.close_sync()
    _STORES.clear()
    _PENDING.clear()


def _table(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")
    return collection


def _select_columns(collection: str, include_payloads: bool) -> str:
    columns = ["id", "doc"]
    for name in PAYLOAD_COLUMNS[_table(collection)]:
        columns.append(name if include_payloads else f"NULL AS {name}")
    return ", ".join(columns)


def _row_to_entity(collection: str, row: sqlite3.Row) -> Entity | None:
    try:
        document = json.loads(row["doc"])
    except (TypeError, json.JSONDecodeError):
        document = None
    payloads = {name: row[name] for name in PAYLOAD_COLUMNS[collection]}
    entity = coerce_entity(collection, document, payloads)
    if entity is None:
        logger.warning(
            "Skipping malformed %s record %r", collection, row["id"]
        )
    return entity


def _rows_to_entities(collection: str, rows: list[sqlite3.Row]) -> list[Entity]:
    entities = []
    for row in rows:
        entity = _row_to_entity(collection, row)
        if entity is not None:
            entities.append(entity)
    return entities


def _rollback_quietly(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        logger.warning("Rollback failed: %s", exc)


def _normalize_path(path: Path) -> str:
    return os.path.normcase(str(path.expanduser().resolve(strict=False)))


def _log_slow_db_op(op: str, *, start: float, **context: object) -> None:
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    if elapsed_ms < _PERF_WARN_MS:
        return
    logger.info(
        "ObjectStore operation exceeded perf threshold",
        extra={
            "event": "object_store_slow_op",
            "operation": op,
            "elapsed_ms": round(elapsed_ms, 2),
            **context,
        },
    )
