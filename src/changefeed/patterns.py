"""
Ready-made handlers for common changefeed patterns.

- RecordMirror: keep a local copy of a single record
- CollectionMirror: keep a local map of every record matching a query
- EventForwarder: translate changes into create/update/delete notifications

All three take their query and connection from the ``args`` passed to
start() (keys "query" and "connection") and answer ``call("get")`` with
their current view where that makes sense.

Example:
    >>> feed = await start(
    ...     CollectionMirror(),
    ...     {"query": TableChanges("people", include_initial=True), "connection": db},
    ...     client=InMemoryFeedClient(),
    ... )
    >>> people = await feed.call("get")
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from changefeed.dispatcher import ReplyTo
from changefeed.directives import Next, NoReply, Reply, Stop, Subscribe
from changefeed.handler import BaseChangefeedHandler
from changefeed.records import ChangeKind, ChangeRecord, parse_batch

GET = "get"


def _options(args: Any) -> Mapping[str, Any]:
    return args if isinstance(args, Mapping) else {}


def _subscribe(args: Mapping[str, Any], state: Any) -> Subscribe | Stop:
    if "query" not in args or "connection" not in args:
        return Stop("missing_query_or_connection")
    return Subscribe(args["query"], args["connection"], state)


class RecordMirror(BaseChangefeedHandler):
    """
    Mirrors one record. The state is the record's latest value.

    A deletion sets the state to None.
    """

    def initialize(self, args: Any) -> Subscribe | Stop:
        args = _options(args)
        return _subscribe(args, args.get("initial"))

    def on_update(self, batch: Sequence[Any], state: Any) -> Next:
        for record in parse_batch(batch):
            state = record.new_val
        return Next(state)

    def on_call(self, request: Any, reply_to: ReplyTo, state: Any) -> Reply:
        if request == GET:
            return Reply(state, state)
        return super().on_call(request, reply_to, state)  # type: ignore[return-value]


class CollectionMirror(BaseChangefeedHandler):
    """
    Mirrors every record matching the query as a map keyed by ``key_field``.

    - no old value: the record was created and is added
    - no new value: the record was deleted and is removed
    - otherwise the record was updated and is replaced
    """

    def __init__(self, key_field: str = "id") -> None:
        self.key_field = key_field

    def initialize(self, args: Any) -> Subscribe | Stop:
        args = _options(args)
        return _subscribe(args, dict(args.get("initial", {})))

    def on_update(self, batch: Sequence[Any], state: dict[Any, Any]) -> Next:
        records = dict(state)
        for record in parse_batch(batch):
            if record.kind is ChangeKind.DELETE:
                records.pop(record.old_val[self.key_field], None)
            else:
                records[record.new_val[self.key_field]] = record.new_val
        return Next(records)

    def on_call(self, request: Any, reply_to: ReplyTo, state: dict[Any, Any]) -> Reply:
        if request == GET:
            return Reply(dict(state), state)
        if isinstance(request, tuple) and len(request) == 2 and request[0] == GET:
            return Reply(state.get(request[1]), state)
        return super().on_call(request, reply_to, state)  # type: ignore[return-value]


Notification = tuple[Any, ...]


class EventForwarder(BaseChangefeedHandler):
    """
    Forwards every change to a publish callable.

    The publish callable comes from ``args["publish"]`` and is the state.
    It receives ("create", value), ("update", old_value, new_value) or
    ("delete", value). Fan-out to several consumers is up to the callable.
    """

    def initialize(self, args: Any) -> Subscribe | Stop:
        args = _options(args)
        publish = args.get("publish")
        if not callable(publish):
            return Stop("missing_publish")
        return _subscribe(args, publish)

    def on_update(self, batch: Sequence[Any], publish: Callable[[Notification], Any]) -> Next:
        for record in parse_batch(batch):
            publish(self.to_notification(record))
        return Next(publish)

    def on_cast(self, message: Any, publish: Callable[[Notification], Any]) -> NoReply:
        publish(message)
        return NoReply(publish)

    @staticmethod
    def to_notification(record: ChangeRecord) -> Notification:
        if record.kind is ChangeKind.CREATE:
            return ("create", record.new_val)
        if record.kind is ChangeKind.DELETE:
            return ("delete", record.old_val)
        return ("update", record.old_val, record.new_val)


__all__ = [
    "GET",
    "CollectionMirror",
    "EventForwarder",
    "RecordMirror",
]
