"""
Directives returned by changefeed handlers.

Handlers never perform I/O on behalf of the changefeed. Every callback
returns a directive describing what the changefeed should do next:

    initialize  -> Subscribe | Stop
    on_update   -> Next | Stop
    on_call     -> Reply | NoReply | Stop
    on_cast     -> NoReply | Stop
    on_info     -> NoReply | Stop
    on_migrate  -> MigrateOk | MigrateError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final


class _Sentinel:
    """Named marker value."""

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


KEEP: Final = _Sentinel("KEEP")
"""Stop.state default: terminate with the current application state."""

NO_REPLY: Final = _Sentinel("NO_REPLY")
"""Stop.reply default: the pending caller (if any) gets no reply from Stop."""

TIMEOUT: Final = "timeout"
"""Message passed to on_info when a directive's idle timeout expires."""


@dataclass(frozen=True)
class Subscribe:
    """
    Returned by initialize to start the feed.

    Attributes:
        query: Opaque query description passed to the feed client
        connection: Opaque connection passed to the feed client
        state: Initial application state
    """

    query: Any
    connection: Any
    state: Any = None


@dataclass(frozen=True)
class Next:
    """Returned by on_update to request the next batch."""

    state: Any


@dataclass(frozen=True)
class Reply:
    """
    Returned by on_call to answer the caller.

    Attributes:
        reply: Value returned to the caller
        state: New application state
        timeout: Optional idle timeout in seconds (see TIMEOUT)
    """

    reply: Any
    state: Any
    timeout: float | None = None


@dataclass(frozen=True)
class NoReply:
    """Returned by on_call, on_cast or on_info to continue without replying."""

    state: Any
    timeout: float | None = None


@dataclass(frozen=True)
class Stop:
    """
    Requests shutdown. terminate is invoked afterwards with ``reason``.

    Attributes:
        reason: Termination reason reported to linked dependents
        state: New application state, KEEP to leave it unchanged
        reply: Reply for the pending caller (on_call only)
    """

    reason: Any
    state: Any = KEEP
    reply: Any = NO_REPLY


@dataclass(frozen=True)
class MigrateOk:
    """Returned by on_migrate with the migrated state."""

    state: Any


@dataclass(frozen=True)
class MigrateError:
    """Returned by on_migrate to refuse the migration."""

    reason: Any


Directive = Subscribe | Next | Reply | NoReply | Stop | MigrateOk | MigrateError


__all__ = [
    "KEEP",
    "NO_REPLY",
    "TIMEOUT",
    "Directive",
    "MigrateError",
    "MigrateOk",
    "Next",
    "NoReply",
    "Reply",
    "Stop",
    "Subscribe",
]
