"""
Callback dispatch for changefeeds.

The CallbackDispatcher is the only component that talks to the handler.
It owns the application state, passes it into every callback, stores the
state returned in the directive and reshapes the directive into an
Outcome the state machine acts on. A directive a callback is not allowed
to return raises HandlerReturnError; handler exceptions propagate.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from changefeed.directives import (
    KEEP,
    NO_REPLY,
    MigrateError,
    MigrateOk,
    Next,
    NoReply,
    Reply,
    Stop,
    Subscribe,
)
from changefeed.exceptions import HandlerReturnError, MigrationError
from changefeed.handler import ChangefeedHandler

logger = logging.getLogger(__name__)


class Action(Enum):
    """What the state machine does after a callback returns."""

    CONTINUE = "continue"
    FETCH_NEXT = "fetch_next"
    STOP = "stop"


@dataclass(frozen=True)
class Outcome:
    """
    Engine-level result of a handler callback.

    Attributes:
        action: Next step for the state machine
        reply: Value for the pending caller, NO_REPLY if none
        reason: Stop reason when action is STOP
        timeout: Idle timeout in seconds requested by the handler
    """

    action: Action
    reply: Any = NO_REPLY
    reason: Any = None
    timeout: float | None = None

    @property
    def stops(self) -> bool:
        return self.action is Action.STOP


class ReplyTo:
    """
    Reply channel for one call().

    Handlers receive it in on_call and may keep it to reply later after
    returning NoReply. Only the first reply is delivered; replies to a
    caller that already gave up are dropped.
    """

    def __init__(self, future: asyncio.Future[Any]) -> None:
        self._future = future

    @property
    def replied(self) -> bool:
        return self._future.done()

    def reply(self, value: Any) -> bool:
        """
        Send ``value`` to the caller.

        Returns:
            True if the caller received it
        """
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def fail(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True


async def _invoke(func: Any, *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CallbackDispatcher:
    """
    Invokes the handler and threads the application state through it.

    Args:
        handler: The changefeed handler
        name: Changefeed name used in logs
    """

    def __init__(self, handler: ChangefeedHandler, name: str = "changefeed") -> None:
        self._handler = handler
        self._name = name
        self._state: Any = None

    @property
    def handler(self) -> ChangefeedHandler:
        return self._handler

    @property
    def state(self) -> Any:
        return self._state

    async def initialize(self, args: Any) -> Subscribe | Stop:
        """
        Run the handler's initialize.

        Returns:
            The Subscribe or Stop directive. On Subscribe the initial
            state is stored.
        """
        directive = await _invoke(self._handler.initialize, args)
        if isinstance(directive, Subscribe):
            self._state = directive.state
            return directive
        if isinstance(directive, Stop):
            return directive
        raise HandlerReturnError("initialize", directive)

    async def update(self, batch: Sequence[Any]) -> Outcome:
        directive = await _invoke(self._handler.on_update, batch, self._state)
        if isinstance(directive, Next):
            self._state = directive.state
            return Outcome(Action.FETCH_NEXT)
        if isinstance(directive, Stop) and directive.reply is NO_REPLY:
            return self._stop(directive)
        raise HandlerReturnError("on_update", directive)

    async def call(self, request: Any, reply_to: ReplyTo) -> Outcome:
        directive = await _invoke(self._handler.on_call, request, reply_to, self._state)
        if isinstance(directive, Reply):
            self._state = directive.state
            return Outcome(Action.CONTINUE, reply=directive.reply, timeout=directive.timeout)
        if isinstance(directive, NoReply):
            self._state = directive.state
            return Outcome(Action.CONTINUE, timeout=directive.timeout)
        if isinstance(directive, Stop):
            return self._stop(directive)
        raise HandlerReturnError("on_call", directive)

    async def cast(self, message: Any) -> Outcome:
        return await self._no_reply("on_cast", self._handler.on_cast, message)

    async def info(self, message: Any) -> Outcome:
        return await self._no_reply("on_info", self._handler.on_info, message)

    async def migrate(
        self,
        from_version: Any,
        extra: Any,
        handler: ChangefeedHandler | None = None,
    ) -> None:
        """
        Migrate the state, optionally switching to a new handler.

        The new handler's on_migrate converts the state. Nothing changes
        unless it returns MigrateOk.

        Raises:
            MigrationError: If on_migrate returned MigrateError
        """
        target = handler or self._handler
        directive = await _invoke(target.on_migrate, from_version, self._state, extra)
        if isinstance(directive, MigrateOk):
            self._state = directive.state
            self._handler = target
            return
        if isinstance(directive, MigrateError):
            raise MigrationError(directive.reason)
        raise HandlerReturnError("on_migrate", directive)

    async def terminate(self, reason: Any) -> None:
        """Notify the handler. Errors are logged and discarded."""
        try:
            await _invoke(self._handler.terminate, reason, self._state)
        except Exception:
            logger.warning(
                "Handler terminate failed",
                extra={"changefeed": self._name, "reason": repr(reason)},
                exc_info=True,
            )

    async def _no_reply(self, callback: str, func: Any, message: Any) -> Outcome:
        directive = await _invoke(func, message, self._state)
        if isinstance(directive, NoReply):
            self._state = directive.state
            return Outcome(Action.CONTINUE, timeout=directive.timeout)
        if isinstance(directive, Stop) and directive.reply is NO_REPLY:
            return self._stop(directive)
        raise HandlerReturnError(callback, directive)

    def _stop(self, directive: Stop) -> Outcome:
        if directive.state is not KEEP:
            self._state = directive.state
        return Outcome(Action.STOP, reply=directive.reply, reason=directive.reason)


__all__ = [
    "Action",
    "CallbackDispatcher",
    "Outcome",
    "ReplyTo",
]
