"""Cross-process change-notice channel contracts and the SQLite implementation.

`QueryHub` depends on the `BroadcastChannel` protocol to stay transport
agnostic. `SqliteBroadcastChannel` shares the library database file with the
object store: senders append rows to `change_notices`, and every open channel
polls for rows newer than its cursor. Delivery is eventual and unordered
relative to other processes' writes.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Protocol

from playlistz.db.schema import create_schema
from playlistz.events import ChangeNotice
from playlistz.utils.async_utils import run_blocking

NoticeListener = Callable[[ChangeNotice], None]

logger = logging.getLogger(__name__)


class ChannelHandle(Protocol):
    """Registration returned by `BroadcastChannel.listen`."""

    def close(self) -> None: ...


class BroadcastChannel(Protocol):
    """Publish/subscribe primitive scoped to one library origin."""

    async def start(self) -> None: ...

    async def aclose(self) -> None: ...

    def post(self, notice: ChangeNotice) -> None:
        """Send `notice` to every listener without waiting for delivery."""
        ...

    def listen(self, listener: NoticeListener) -> ChannelHandle: ...


class ListenerHandle:
    """Listener registration shared by channel implementations."""

    def __init__(
        self, listener: NoticeListener, on_close: Callable[[ListenerHandle], None]
    ) -> None:
        self.listener = listener
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close(self)


def dispatch_notice(handles: list[ListenerHandle], notice: ChangeNotice) -> None:
    """Deliver `notice` to open handles; a failing listener never blocks the rest."""
    for handle in handles:
        if handle.closed:
            continue
        try:
            handle.listener(notice)
        except Exception:
            logger.exception(
                "Change-notice listener failed for %s/%s",
                notice.collection,
                notice.key,
            )


class SqliteBroadcastChannel:
    """Change-notice channel backed by a table in the library database."""

    def __init__(
        self,
        db_path: Path,
        *,
        poll_interval_s: float = 0.25,
        retention_s: float = 300.0,
    ) -> None:
        self._db_path = Path(db_path)
        self._poll_interval_s = max(0.01, float(poll_interval_s))
        self._retention_s = max(1.0, float(retention_s))
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._cursor = 0
        self._handles: list[ListenerHandle] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._post_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        await run_blocking(self._open_sync)
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def aclose(self) -> None:
        if self._post_tasks:
            await asyncio.gather(*list(self._post_tasks), return_exceptions=True)
        if self._poll_task is not None:
            self._poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        self._handles.clear()
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def post(self, notice: ChangeNotice) -> None:
        task = asyncio.create_task(self._post(notice))
        self._post_tasks.add(task)
        task.add_done_callback(self._post_tasks.discard)

    def listen(self, listener: NoticeListener) -> ListenerHandle:
        handle = ListenerHandle(listener, self._remove_handle)
        self._handles.append(handle)
        return handle

    async def flush(self) -> None:
        """Wait until every posted notice has been written."""
        while self._post_tasks:
            await asyncio.gather(*list(self._post_tasks), return_exceptions=True)

    async def poll_once(self) -> int:
        """Fetch and dispatch notices newer than the cursor; return how many."""
        notices = await run_blocking(self._fetch_new_sync)
        for notice in notices:
            dispatch_notice(list(self._handles), notice)
        return len(notices)

    def _remove_handle(self, handle: ListenerHandle) -> None:
        with suppress(ValueError):
            self._handles.remove(handle)

    async def _post(self, notice: ChangeNotice) -> None:
        try:
            await run_blocking(self._insert_sync, notice)
        except sqlite3.Error as exc:
            logger.warning(
                "Failed to broadcast change notice for %s/%s: %s",
                notice.collection,
                notice.key,
                exc,
            )

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval_s)
            try:
                await self.poll_once()
            except sqlite3.Error as exc:
                logger.warning("Change-notice poll failed: %s", exc)

    def _open_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self._db_path,
                timeout=30,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("BEGIN IMMEDIATE")
            try:
                create_schema(conn)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                conn.close()
                raise
            row = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM change_notices").fetchone()
            # Only notices posted after start are delivered.
            self._cursor = int(row[0])
            self._conn = conn

    def _insert_sync(self, notice: ChangeNotice) -> None:
        now = time.time()
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO change_notices (origin, collection, record_key, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (notice.origin, notice.collection, notice.key, now),
                )
                conn.execute(
                    "DELETE FROM change_notices WHERE created_at < ?",
                    (now - self._retention_s,),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def _fetch_new_sync(self) -> list[ChangeNotice]:
        with self._lock:
            conn = self._require_conn()
            rows = conn.execute(
                """
                SELECT seq, origin, collection, record_key
                FROM change_notices
                WHERE seq > ?
                ORDER BY seq
                """,
                (self._cursor,),
            ).fetchall()
            if rows:
                self._cursor = int(rows[-1]["seq"])
        return [
            ChangeNotice(
                collection=row["collection"],
                key=row["record_key"],
                origin=row["origin"],
            )
            for row in rows
        ]

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Broadcast channel is not started.")
        return self._conn
