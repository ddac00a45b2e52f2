"""
Handler contract for changefeeds.

A handler owns the application logic of a changefeed: it declares the
query to subscribe to, reacts to every batch of changes and answers
messages sent to the changefeed. Each callback receives the current
application state and returns a directive carrying the new state
(see changefeed.directives). The changefeed never inspects the state.

Callbacks may be plain methods or coroutines. They are never invoked
concurrently for the same changefeed.

Protocols:
    ChangefeedHandler: The full callback contract, checked by start()

Base Classes:
    BaseChangefeedHandler: Abstract base class with defaults for all
        callbacks except initialize and on_update

Example:
    >>> class PersonFeed(BaseChangefeedHandler):
    ...     def initialize(self, args):
    ...         query = TableChanges("people", key=args["id"])
    ...         return Subscribe(query, args["db"], None)
    ...
    ...     def on_update(self, batch, state):
    ...         return Next(batch[-1].new_val if batch else state)
    ...
    ...     def on_call(self, request, reply_to, state):
    ...         return Reply(state, state)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from changefeed.directives import (
    MigrateError,
    MigrateOk,
    Next,
    NoReply,
    Reply,
    Stop,
    Subscribe,
)

if TYPE_CHECKING:
    from changefeed.dispatcher import ReplyTo

logger = logging.getLogger(__name__)


@runtime_checkable
class ChangefeedHandler(Protocol):
    """
    Protocol for changefeed handlers.

    Methods:
        initialize: Declare the subscription and the initial state
        on_update: React to one batch of change records
        on_call: Answer a synchronous request
        on_cast: React to a fire-and-forget message
        on_info: React to an out-of-band message
        on_migrate: Convert the state during a hot upgrade
        terminate: Cleanup notification when the changefeed stops
    """

    def initialize(self, args: Any) -> Subscribe | Stop | Awaitable[Subscribe | Stop]:
        """
        Called once by start(), which blocks until this returns.

        Returns:
            Subscribe(query, connection, state) to start the feed, or
            Stop(reason) to make start() raise ChangefeedStartError
        """
        ...

    def on_update(self, batch: Sequence[Any], state: Any) -> Next | Stop | Awaitable[Next | Stop]:
        """
        Called once per received batch, including the first one.

        Returns:
            Next(state) to fetch the next batch, or Stop(reason, state)
        """
        ...

    def on_call(
        self, request: Any, reply_to: ReplyTo, state: Any
    ) -> Reply | NoReply | Stop | Awaitable[Reply | NoReply | Stop]:
        """Answer a request sent with ChangefeedHandle.call()."""
        ...

    def on_cast(self, message: Any, state: Any) -> NoReply | Stop | Awaitable[NoReply | Stop]:
        """React to a message sent with ChangefeedHandle.cast()."""
        ...

    def on_info(self, message: Any, state: Any) -> NoReply | Stop | Awaitable[NoReply | Stop]:
        """React to a message sent with ChangefeedHandle.send() or an idle TIMEOUT."""
        ...

    def on_migrate(
        self, from_version: Any, state: Any, extra: Any
    ) -> MigrateOk | MigrateError | Awaitable[MigrateOk | MigrateError]:
        """Convert ``state`` written by ``from_version`` of the handler."""
        ...

    def terminate(self, reason: Any, state: Any) -> Any:
        """Called exactly once when the changefeed stops. Errors are discarded."""
        ...


class BaseChangefeedHandler(ABC):
    """
    Abstract base class for changefeed handlers.

    Subclasses must implement initialize and on_update. Calls and casts
    are rejected by default, which crashes the changefeed like any other
    handler error. Unexpected info messages are logged and ignored.
    """

    @abstractmethod
    def initialize(self, args: Any) -> Subscribe | Stop | Awaitable[Subscribe | Stop]:
        """Declare the subscription. See ChangefeedHandler.initialize."""
        ...

    @abstractmethod
    def on_update(self, batch: Sequence[Any], state: Any) -> Next | Stop | Awaitable[Next | Stop]:
        """React to a batch. See ChangefeedHandler.on_update."""
        ...

    def on_call(
        self, request: Any, reply_to: ReplyTo, state: Any
    ) -> Reply | NoReply | Stop | Awaitable[Reply | NoReply | Stop]:
        raise NotImplementedError(f"{type(self).__name__} does not handle call {request!r}")

    def on_cast(self, message: Any, state: Any) -> NoReply | Stop | Awaitable[NoReply | Stop]:
        raise NotImplementedError(f"{type(self).__name__} does not handle cast {message!r}")

    def on_info(self, message: Any, state: Any) -> NoReply | Stop | Awaitable[NoReply | Stop]:
        logger.warning(
            "Unhandled info message",
            extra={"handler": type(self).__name__, "info_message": repr(message)},
        )
        return NoReply(state)

    def on_migrate(
        self, from_version: Any, state: Any, extra: Any
    ) -> MigrateOk | MigrateError | Awaitable[MigrateOk | MigrateError]:
        return MigrateOk(state)

    def terminate(self, reason: Any, state: Any) -> Any:
        return None


__all__ = [
    "ChangefeedHandler",
    "BaseChangefeedHandler",
]
