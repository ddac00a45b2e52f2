"""
Feed client protocol.

The changefeed does not speak any wire protocol itself. It drives a
feed client, a small capability set supplied by the data-source driver:

    open(query, connection) -> FeedPage(cursor, first batch)
    next(cursor)            -> next batch
    close(cursor)           -> None

Errors are reported by raising. See changefeed.exceptions for how each
error class is treated by the changefeed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class FeedPage:
    """
    Result of a successful open().

    Attributes:
        cursor: Opaque streaming cursor used for next() and close()
        batch: The first batch of change records
    """

    cursor: Any
    batch: Sequence[Any] = field(default_factory=tuple)


@runtime_checkable
class FeedClient(Protocol):
    """
    Protocol for data-source clients driven by a changefeed.

    Example:
        >>> class MyClient:
        ...     async def open(self, query, connection) -> FeedPage:
        ...         cursor = await connection.run(query)
        ...         return FeedPage(cursor, await cursor.first_batch())
        ...
        ...     async def next(self, cursor):
        ...         return await cursor.next_batch()
        ...
        ...     async def close(self, cursor) -> None:
        ...         await cursor.close()
    """

    async def open(self, query: Any, connection: Any) -> FeedPage:
        """
        Execute the subscription query.

        Raises:
            TransientConnectionError: Data source temporarily unavailable
            FatalQueryError: The query was rejected
            ConnectionClosedError: The connection was closed
        """
        ...

    async def next(self, cursor: Any) -> Sequence[Any]:
        """
        Wait for and return the next batch from ``cursor``.

        Raises:
            TransientConnectionError: The feed was interrupted
            ConnectionClosedError: The cursor or connection was closed
        """
        ...

    async def close(self, cursor: Any) -> None:
        """Release ``cursor``."""
        ...


def is_batch(value: Any) -> bool:
    """Check that a fetch result has the shape of a batch."""
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


__all__ = [
    "FeedClient",
    "FeedPage",
    "is_batch",
]
