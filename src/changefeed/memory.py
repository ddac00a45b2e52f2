"""
In-memory data source and feed client.

InMemoryDataSource holds tables of documents keyed by their ``id`` and
emits a ChangeRecord to every open feed whose query matches a write.
InMemoryFeedClient implements the FeedClient protocol on top of it.
Both are intended for tests, examples and local development.

Failure injection:
- fail_next_open(error, times): open() raises ``error``
- break_feeds(error): every open cursor's next() raises ``error``
- close_feeds(): every open cursor's next() raises ConnectionClosedError

Example:
    >>> db = InMemoryDataSource()
    >>> db.insert("people", {"id": 1, "name": "Ada"})
    >>> client = InMemoryFeedClient()
    >>> page = await client.open(TableChanges("people", key=1, include_initial=True), db)
    >>> page.batch[0].new_val
    {'id': 1, 'name': 'Ada'}
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from changefeed.client import FeedPage
from changefeed.exceptions import ConnectionClosedError, FatalQueryError
from changefeed.records import ChangeRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableChanges:
    """
    Query for the changes of a table, or of a single document in it.

    Attributes:
        table: Table name
        key: Only changes of the document with this id (None = whole table)
        include_initial: Deliver the current value(s) as the first batch
    """

    table: str
    key: Any = None
    include_initial: bool = False

    def matches(self, table: str, key: Any) -> bool:
        return table == self.table and (self.key is None or self.key == key)


_CLOSED = object()


@dataclass(eq=False)
class InMemoryCursor:
    """Cursor of one open feed. Pending changes queue up until fetched."""

    cursor_id: int
    query: TableChanges
    source: InMemoryDataSource = field(repr=False)
    _queue: asyncio.Queue[Any] = field(default_factory=asyncio.Queue, repr=False)
    closed: bool = False

    def push(self, item: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def drain(self) -> list[Any]:
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    async def get(self) -> Any:
        return await self._queue.get()


class InMemoryDataSource:
    """
    Tables of documents with change notification.

    Documents are dicts with an ``id`` key. Values handed out in change
    records are deep copies.
    """

    def __init__(self, key_field: str = "id") -> None:
        self.key_field = key_field
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {}
        self._cursors: dict[int, InMemoryCursor] = {}
        self._cursor_ids = itertools.count(1)
        self._open_failures: deque[BaseException] = deque()
        self.open_count = 0
        self.close_count = 0

    # Tables

    def create_table(self, table: str) -> None:
        self._tables.setdefault(table, {})

    def get(self, table: str, key: Any) -> dict[str, Any] | None:
        doc = self._tables.get(table, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def all(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._tables.get(table, {}).values()]

    def insert(self, table: str, doc: dict[str, Any]) -> None:
        """
        Insert a document.

        Raises:
            KeyError: If the document has no key or the key already exists
        """
        key = doc[self.key_field]
        rows = self._tables.setdefault(table, {})
        if key in rows:
            raise KeyError(f"Duplicate primary key {key!r} in table {table!r}")
        rows[key] = copy.deepcopy(doc)
        self._emit(table, key, None, rows[key])

    def update(self, table: str, key: Any, changes: dict[str, Any]) -> None:
        """
        Merge ``changes`` into an existing document.

        Raises:
            KeyError: If the document does not exist
        """
        rows = self._tables.get(table, {})
        old = rows[key]
        new = {**old, **copy.deepcopy(changes)}
        if new == old:
            return
        rows[key] = new
        self._emit(table, key, old, new)

    def replace(self, table: str, doc: dict[str, Any]) -> None:
        """Insert or fully replace a document."""
        key = doc[self.key_field]
        rows = self._tables.setdefault(table, {})
        old = rows.get(key)
        rows[key] = copy.deepcopy(doc)
        if old != rows[key]:
            self._emit(table, key, old, rows[key])

    def delete(self, table: str, key: Any) -> None:
        rows = self._tables.get(table, {})
        old = rows.pop(key, None)
        if old is not None:
            self._emit(table, key, old, None)

    # Feeds

    @property
    def open_cursors(self) -> list[InMemoryCursor]:
        return list(self._cursors.values())

    def fail_next_open(self, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` open() calls raise ``error``."""
        self._open_failures.extend([error] * times)

    def break_feeds(self, error: BaseException) -> None:
        """Make every open cursor's pending or next fetch raise ``error``."""
        for cursor in self._cursors.values():
            cursor.push(error)

    def close_feeds(self) -> None:
        """Close every open cursor out-of-band."""
        for cursor in list(self._cursors.values()):
            cursor.push(_CLOSED)

    def _open(self, query: TableChanges) -> FeedPage:
        if self._open_failures:
            raise self._open_failures.popleft()
        if query.table not in self._tables:
            raise FatalQueryError(f"Table {query.table!r} does not exist")

        self.open_count += 1
        cursor = InMemoryCursor(cursor_id=next(self._cursor_ids), query=query, source=self)
        self._cursors[cursor.cursor_id] = cursor

        batch: list[ChangeRecord] = []
        if query.include_initial:
            rows = self._tables[query.table]
            if query.key is not None:
                docs = [rows[query.key]] if query.key in rows else []
            else:
                docs = list(rows.values())
            batch = [ChangeRecord(new_val=copy.deepcopy(doc)) for doc in docs]

        logger.debug(
            "Feed opened",
            extra={"cursor_id": cursor.cursor_id, "table": query.table, "initial": len(batch)},
        )
        return FeedPage(cursor=cursor, batch=batch)

    def _close(self, cursor: InMemoryCursor) -> None:
        if cursor.closed:
            return
        cursor.push(_CLOSED)
        cursor.closed = True
        self._cursors.pop(cursor.cursor_id, None)
        self.close_count += 1

    def _emit(
        self,
        table: str,
        key: Any,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> None:
        for cursor in self._cursors.values():
            if cursor.query.matches(table, key):
                cursor.push(ChangeRecord(old_val=copy.deepcopy(old), new_val=copy.deepcopy(new)))


class InMemoryFeedClient:
    """
    FeedClient for InMemoryDataSource.

    next() waits for at least one change and returns every change queued
    at that moment as one batch. Errors queued by break_feeds() are raised
    once all changes queued before them have been returned.
    """

    async def open(self, query: TableChanges, connection: InMemoryDataSource) -> FeedPage:
        if not isinstance(query, TableChanges):
            raise FatalQueryError(f"Unsupported query {query!r}")
        return connection._open(query)

    async def next(self, cursor: InMemoryCursor) -> list[ChangeRecord]:
        if cursor.closed:
            raise ConnectionClosedError(f"Cursor {cursor.cursor_id} is closed")

        first = await cursor.get()
        items = [first, *cursor.drain()]

        batch: list[ChangeRecord] = []
        for position, item in enumerate(items):
            if isinstance(item, ChangeRecord):
                batch.append(item)
                continue
            if batch:
                # records queued before a failure are delivered first
                for rest in items[position:]:
                    cursor.push(rest)
                return batch
            for rest in items[position + 1 :]:
                cursor.push(rest)
            if item is _CLOSED:
                raise ConnectionClosedError(f"Cursor {cursor.cursor_id} was closed")
            raise item
        return batch

    async def close(self, cursor: InMemoryCursor) -> None:
        cursor.source._close(cursor)


__all__ = [
    "InMemoryCursor",
    "InMemoryDataSource",
    "InMemoryFeedClient",
    "TableChanges",
]
