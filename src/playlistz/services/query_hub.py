"""Mutation-and-notify protocol plus the live query registry.

A `QueryHub` is constructed once at start-up and handed to every component
that writes or observes records. Every committed write is followed by:

1. a re-derivation of every live query on the written collection, awaited
   before the write call returns (read-your-writes inside one process), and
2. a fire-and-forget `ChangeNotice` on the cross-process channel.

Live queries recompute their view from a full scan instead of patching it
incrementally, and publish only when the new view differs structurally from
the last published one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import fields as dataclass_fields
from typing import Any
from uuid import uuid4

from playlistz.events import ChangeNotice
from playlistz.models import (
    COLLECTIONS,
    PAYLOAD_FIELDS,
    PLAYLISTS,
    Entity,
    Playlist,
    Song,
)
from playlistz.services.broadcast import BroadcastChannel, ChannelHandle
from playlistz.services.object_store import ObjectStore, Transaction

FilterFn = Callable[[Any], bool]
ChangeCallback = Callable[[list[Any]], None]

logger = logging.getLogger(__name__)


class LiveQuery:
    """Filtered, field-projected view of one collection kept in sync with the store."""

    def __init__(
        self,
        hub: QueryHub,
        collection: str,
        *,
        filter_fn: FilterFn | None = None,
        fields: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> None:
        self._hub = hub
        self._collection = collection
        self._filter_fn = filter_fn
        self._fields = tuple(fields) if fields else ()
        self._limit = limit if limit and limit > 0 else None
        self._include_payloads = not self._fields or any(
            name in PAYLOAD_FIELDS[collection] for name in self._fields
        )
        self._value: list[Any] = []
        self._callbacks: list[ChangeCallback] = []
        self._refresh_lock = asyncio.Lock()
        self._handle: ChannelHandle | None = None
        self._closed = False
        self._published = False
        self.publish_count = 0

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def value(self) -> list[Any]:
        """Last published view; treat as read-only."""
        return self._value

    def current_value(self) -> list[Any]:
        return self._value

    @property
    def closed(self) -> bool:
        return self._closed

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register `callback` for future publications; return a remover."""
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def unsubscribe(self) -> None:
        """Detach from the hub and the channel; no callback fires afterwards."""
        if self._closed:
            return
        self._closed = True
        self._callbacks.clear()
        self._hub._forget(self)
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    async def refresh(self) -> bool:
        """Re-derive the view and publish it if it changed.

        The first scan always publishes. Errors are logged and swallowed so a
        broken query never fails the writer that triggered it.
        """
        if self._closed:
            return False
        async with self._refresh_lock:
            if self._closed:
                return False
            try:
                value = await self._hub.store.run_transaction(
                    self._derive, write=False, op_name=f"live_query:{self._collection}"
                )
            except Exception:
                logger.exception(
                    "Live query over %s failed to re-derive", self._collection
                )
                return False
            if self._closed:
                return False
            if self._published and value == self._value:
                return False
            self._published = True
            self._value = value
            self._publish(value)
            return True

    def _attach(self, handle: ChannelHandle) -> None:
        self._handle = handle

    def _derive(self, tx: Transaction) -> list[Any]:
        items: list[Any] = tx.get_all(
            self._collection, include_payloads=self._include_payloads
        )
        if self._filter_fn is not None:
            items = [item for item in items if self._filter_fn(item)]
        if self._limit is not None:
            items = items[: self._limit]
        if not self._fields:
            return items
        return [self._project(item) for item in items]

    def _project(self, entity: Entity) -> dict[str, Any]:
        projected: dict[str, Any] = {"id": entity.id}
        for name in self._fields:
            projected[name] = getattr(entity, name)
        return projected

    def _publish(self, value: list[Any]) -> None:
        self.publish_count += 1
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception(
                    "Live query subscriber on %s raised", self._collection
                )

    def _on_notice(self, notice: ChangeNotice) -> None:
        if self._closed or notice.collection != self._collection:
            return
        if notice.origin == self._hub.origin:
            return
        self._hub._spawn(self.refresh())


class QueryHub:
    """Owns the live query registry and performs notifying writes."""

    def __init__(
        self,
        store: ObjectStore,
        channel: BroadcastChannel,
        *,
        origin: str | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self.origin = origin or uuid4().hex
        self._queries: dict[str, list[LiveQuery]] = {name: [] for name in COLLECTIONS}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def channel(self) -> BroadcastChannel:
        return self._channel

    def query_count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._queries.get(collection, []))
        return sum(len(queries) for queries in self._queries.values())

    async def mutate(
        self,
        collection: str,
        key: str,
        update_fn: Callable[[Entity | None], Entity],
    ) -> Entity:
        """Read-modify-write one record in a single transaction, then notify.

        `update_fn` receives the stored record (or `None`) and returns the full
        replacement. If it raises, nothing is committed and nobody is notified.
        """
        _check_collection(collection)

        def _apply(tx: Transaction) -> Entity:
            current = tx.get(collection, key)
            updated = update_fn(current)
            if updated.id != key:
                raise ValueError(
                    f"update for {collection}/{key} returned record id {updated.id!r}"
                )
            tx.put(collection, updated)
            return updated

        updated = await self._store.run_transaction(
            _apply, op_name=f"mutate:{collection}"
        )
        await self._notify(collection, [key])
        return updated

    async def delete(self, collection: str, *keys: str) -> int:
        """Delete keys in one transaction and notify; return how many existed."""
        _check_collection(collection)
        if not keys:
            return 0

        def _apply(tx: Transaction) -> int:
            return sum(1 for key in keys if tx.delete(collection, key))

        removed = await self._store.run_transaction(
            _apply, op_name=f"delete:{collection}"
        )
        await self._notify(collection, list(keys))
        return removed

    async def delete_by_index(
        self, collection: str, index_name: str, value: str
    ) -> list[str]:
        """Delete every record matching a secondary index value, then notify."""
        _check_collection(collection)
        deleted = await self._store.run_transaction(
            lambda tx: tx.delete_by_index(collection, index_name, value),
            op_name=f"delete_by_index:{collection}",
        )
        await self._notify(collection, deleted or [value])
        return deleted

    async def subscribe(
        self,
        collection: str,
        *,
        filter_fn: FilterFn | None = None,
        fields: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> LiveQuery:
        """Register a live query and publish its initial full scan."""
        _check_collection(collection)
        _check_fields(collection, fields)
        query = LiveQuery(
            self, collection, filter_fn=filter_fn, fields=fields, limit=limit
        )
        self._queries[collection].append(query)
        query._attach(self._channel.listen(query._on_notice))
        await query.refresh()
        return query

    async def wait_idle(self) -> None:
        """Wait for background re-derivations triggered by channel notices."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for queries in self._queries.values():
            for query in list(queries):
                query.unsubscribe()
        await self.wait_idle()

    async def _notify(self, collection: str, keys: list[str]) -> None:
        queries = list(self._queries.get(collection, []))
        if queries:
            await asyncio.gather(*(query.refresh() for query in queries))
        for key in keys:
            self._channel.post(ChangeNotice(collection, key, self.origin))

    def _forget(self, query: LiveQuery) -> None:
        queries = self._queries.get(query.collection, [])
        if query in queries:
            queries.remove(query)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")


def _check_fields(collection: str, fields: Sequence[str] | None) -> None:
    if not fields:
        return
    record_type = Playlist if collection == PLAYLISTS else Song
    known = {item.name for item in dataclass_fields(record_type)}
    unknown = [name for name in fields if name not in known]
    if unknown:
        raise ValueError(
            f"Unknown {collection} field(s) for projection: {', '.join(unknown)}"
        )
