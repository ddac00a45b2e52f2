"""
Public entry point for running changefeeds.

Example:
    >>> from changefeed import start, ChangefeedConfig
    >>> from changefeed.memory import InMemoryDataSource, InMemoryFeedClient, TableChanges
    >>> from changefeed.patterns import RecordMirror
    >>>
    >>> db = InMemoryDataSource()
    >>> feed = await start(
    ...     RecordMirror(),
    ...     {"query": TableChanges("people", key=1, include_initial=True), "connection": db},
    ...     client=InMemoryFeedClient(),
    ... )
    >>> person = await feed.call("get")
    >>> await feed.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from types import TracebackType
from typing import Any

from changefeed.client import FeedClient
from changefeed.config import ChangefeedConfig
from changefeed.dispatcher import ReplyTo
from changefeed.exceptions import CallTimeoutError, ChangefeedStoppedError
from changefeed.handler import ChangefeedHandler
from changefeed.machine import (
    NORMAL,
    CallRequest,
    CastMessage,
    ChangefeedStatus,
    ExitListener,
    ExitSignal,
    InfoMessage,
    MigrateRequest,
    Phase,
    StopRequest,
    SubscriptionStateMachine,
)
from changefeed.metrics import MetricSnapshot
from changefeed.observability import Tracer

logger = logging.getLogger(__name__)


async def start(
    handler: ChangefeedHandler,
    args: Any = None,
    *,
    client: FeedClient,
    config: ChangefeedConfig | None = None,
    name: str | None = None,
    link: ExitListener | None = None,
    tracer: Tracer | None = None,
    enable_tracing: bool = True,
    enable_metrics: bool = True,
) -> ChangefeedHandle:
    """
    Start a changefeed.

    Blocks until the handler's initialize returns. The feed is opened in
    the background afterwards; connect failures are retried with backoff
    and never reported here.

    Args:
        handler: Handler implementing the ChangefeedHandler protocol
        args: Passed unchanged to handler.initialize
        client: Feed client for the data source
        config: Changefeed configuration (defaults to ChangefeedConfig())
        name: Changefeed name (defaults to the handler class name)
        link: Optional callback notified with an ExitSignal on termination
        tracer: Optional tracer
        enable_tracing: Whether to trace when no tracer is given
        enable_metrics: Whether to record OpenTelemetry metrics

    Returns:
        Handle for messaging the running changefeed

    Raises:
        TypeError: If handler or client do not satisfy their protocols
        ChangefeedStartError: If initialize returned Stop
        HandlerReturnError: If initialize returned anything else
    """
    if not isinstance(handler, ChangefeedHandler):
        raise TypeError(
            f"{type(handler).__name__} does not implement the ChangefeedHandler protocol"
        )
    if not isinstance(client, FeedClient):
        raise TypeError(f"{type(client).__name__} does not implement the FeedClient protocol")

    machine = SubscriptionStateMachine(
        handler,
        client,
        name=name or type(handler).__name__,
        config=config,
        tracer=tracer,
        enable_tracing=enable_tracing,
        enable_metrics=enable_metrics,
    )
    await machine.initialize(args)
    if link is not None:
        machine.add_listener(link)
    machine.run()
    return ChangefeedHandle(machine)


class ChangefeedHandle:
    """
    Handle to a running changefeed.

    All messaging goes through the changefeed's inbox and is processed in
    arrival order, interleaved with batch dispatch.
    """

    def __init__(self, machine: SubscriptionStateMachine) -> None:
        self._machine = machine

    def __repr__(self) -> str:
        return f"ChangefeedHandle(name={self.name!r}, phase={self.phase.value!r})"

    @property
    def name(self) -> str:
        return self._machine.name

    @property
    def phase(self) -> Phase:
        return self._machine.phase

    @property
    def alive(self) -> bool:
        return self._machine.exit_signal is None

    @property
    def exit_signal(self) -> ExitSignal | None:
        """The termination notice, None while running."""
        return self._machine.exit_signal

    async def call(self, request: Any, timeout: float | None = None) -> Any:
        """
        Send a synchronous request, answered by the handler's on_call.

        Args:
            request: Passed unchanged to on_call
            timeout: Seconds to wait for the reply (defaults to config.call_timeout)

        Returns:
            The handler's reply

        Raises:
            CallTimeoutError: If no reply arrived in time. The changefeed keeps running.
            ChangefeedStoppedError: If the changefeed is or becomes stopped
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._machine.post(CallRequest(request, ReplyTo(future)))
        wait_for = timeout if timeout is not None else self._machine.config.call_timeout
        try:
            return await asyncio.wait_for(future, wait_for)
        except TimeoutError:
            logger.debug(
                "Changefeed call timed out",
                extra={"changefeed": self.name, "timeout": wait_for},
            )
            raise CallTimeoutError(wait_for) from None

    def cast(self, message: Any) -> None:
        """
        Send a fire-and-forget message, handled by on_cast.

        Raises:
            ChangefeedStoppedError: If the changefeed is stopped
        """
        self._machine.post(CastMessage(message))

    def send(self, message: Any) -> None:
        """
        Send an out-of-band message, handled by on_info.

        Raises:
            ChangefeedStoppedError: If the changefeed is stopped
        """
        self._machine.post(InfoMessage(message))

    async def migrate(
        self,
        from_version: Any,
        extra: Any = None,
        handler: ChangefeedHandler | None = None,
    ) -> None:
        """
        Migrate the application state, optionally upgrading the handler.

        The migration runs inside the changefeed between two events. The
        state (and handler) are only swapped if on_migrate returns MigrateOk.

        Args:
            from_version: Version of the handler that produced the current state
            extra: Passed unchanged to on_migrate
            handler: New handler to switch to; its on_migrate is used

        Raises:
            MigrationError: If on_migrate returned MigrateError
            ChangefeedStoppedError: If the changefeed is stopped
        """
        if handler is not None and not isinstance(handler, ChangefeedHandler):
            raise TypeError(
                f"{type(handler).__name__} does not implement the ChangefeedHandler protocol"
            )
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._machine.post(MigrateRequest(from_version, extra, handler, ReplyTo(future)))
        await future

    async def stop(self, reason: Any = NORMAL, timeout: float | None = None) -> ExitSignal:
        """
        Ask the changefeed to stop and wait until it terminated.

        The request is queued behind already received messages. Stopping an
        already stopped changefeed returns its exit signal.

        Args:
            reason: Stop reason passed to terminate
            timeout: Seconds to wait (defaults to config.stop_timeout)

        Returns:
            The ExitSignal
        """
        signal = self._machine.exit_signal
        if signal is not None:
            return signal
        with contextlib.suppress(ChangefeedStoppedError):
            self._machine.post(StopRequest(reason))
        return await self.wait(
            timeout if timeout is not None else self._machine.config.stop_timeout
        )

    async def wait(self, timeout: float | None = None) -> ExitSignal:
        """
        Wait for the changefeed to terminate.

        Raises:
            TimeoutError: If it is still running after ``timeout`` seconds
        """
        return await asyncio.wait_for(self._machine.wait(), timeout)

    def link(self, listener: ExitListener) -> None:
        """
        Register a dependent notified with the ExitSignal on termination.

        Listeners registered after termination are notified immediately.
        """
        self._machine.add_listener(listener)

    def unlink(self, listener: ExitListener) -> None:
        self._machine.remove_listener(listener)

    def status(self) -> ChangefeedStatus:
        return self._machine.status()

    def metrics(self) -> MetricSnapshot:
        return self._machine.metrics.get_snapshot()

    async def __aenter__(self) -> ChangefeedHandle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


__all__ = [
    "ChangefeedHandle",
    "start",
]
