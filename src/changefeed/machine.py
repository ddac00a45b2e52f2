"""
Subscription state machine for changefeeds.

One SubscriptionStateMachine owns one subscription. It is an actor: every
event (fetch completion, call, cast, info message, timer, migration and
stop request) is put into a single inbox and processed one at a time by
one asyncio task, so handler callbacks never overlap. The only work done
outside that task is pulling the next batch (see changefeed.fetcher).

This module provides:
- Phase: Enum of the phases a changefeed can be in
- ExitSignal: Termination notice delivered to linked dependents
- ChangefeedStatus: Immutable snapshot for health checks
- SubscriptionStateMachine: The actor

Phase transitions:
    CONNECTING -> STREAMING | BACKING_OFF | STOPPED
    STREAMING -> BACKING_OFF | STOPPED
    BACKING_OFF -> CONNECTING | STOPPED
    STOPPED -> (terminal)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from changefeed.backoff import BackoffState
from changefeed.client import FeedClient, FeedPage, is_batch
from changefeed.config import ChangefeedConfig
from changefeed.directives import NO_REPLY, TIMEOUT, Stop
from changefeed.dispatcher import CallbackDispatcher, Outcome, ReplyTo
from changefeed.exceptions import (
    ChangefeedStartError,
    ChangefeedStoppedError,
    ConnectionClosedError,
    MigrationError,
    UnexpectedResultError,
    is_transient_error,
)
from changefeed.fetcher import FetchCompleted, Fetcher
from changefeed.handler import ChangefeedHandler
from changefeed.metrics import ChangefeedMetrics
from changefeed.observability import (
    ATTR_BATCH_SIZE,
    ATTR_CHANGEFEED_NAME,
    ATTR_CONNECT_ATTEMPT,
    ATTR_HANDLER_NAME,
    ATTR_MESSAGE_TYPE,
    ATTR_PHASE,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

NORMAL = "normal"
"""Stop reason for a requested shutdown."""

CONNECTION_CLOSED = "connection_closed"
"""Stop reason when the connection was closed out-of-band."""


class Phase(Enum):
    """Phases of a changefeed."""

    CONNECTING = "connecting"
    """Opening the feed against the data source."""

    STREAMING = "streaming"
    """Feed open, batches are being pulled and dispatched."""

    BACKING_OFF = "backing_off"
    """Waiting for the reconnect timer after a transient failure."""

    STOPPED = "stopped"
    """Terminated. The cursor is released and terminate has run."""


VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.CONNECTING: {Phase.STREAMING, Phase.BACKING_OFF, Phase.STOPPED},
    Phase.STREAMING: {Phase.BACKING_OFF, Phase.STOPPED},
    Phase.BACKING_OFF: {Phase.CONNECTING, Phase.STOPPED},
    Phase.STOPPED: set(),
}


def is_valid_transition(from_phase: Phase, to_phase: Phase) -> bool:
    """Check if a phase transition is allowed."""
    return to_phase in VALID_TRANSITIONS.get(from_phase, set())


# Inbox events


@dataclass(frozen=True)
class Connect:
    """Open the feed (posted once when the changefeed starts)."""


@dataclass(frozen=True)
class ReconnectTimer:
    generation: int


@dataclass(frozen=True)
class IdleTimeout:
    generation: int


@dataclass(frozen=True)
class CallRequest:
    request: Any
    reply_to: ReplyTo


@dataclass(frozen=True)
class CastMessage:
    message: Any


@dataclass(frozen=True)
class InfoMessage:
    message: Any


@dataclass(frozen=True)
class MigrateRequest:
    from_version: Any
    extra: Any
    handler: ChangefeedHandler | None
    reply_to: ReplyTo


@dataclass(frozen=True)
class StopRequest:
    reason: Any


Event = (
    Connect
    | ReconnectTimer
    | IdleTimeout
    | FetchCompleted
    | CallRequest
    | CastMessage
    | InfoMessage
    | MigrateRequest
    | StopRequest
)


@dataclass(frozen=True)
class ExitSignal:
    """
    Notice that a changefeed terminated.

    Attributes:
        name: Changefeed name
        reason: Stop reason, or the exception for a crash
        error: The exception that crashed the changefeed, None for a stop
    """

    name: str
    reason: Any
    error: BaseException | None = None

    @property
    def crashed(self) -> bool:
        return self.error is not None

    @property
    def normal(self) -> bool:
        return self.error is None and self.reason == NORMAL


@dataclass(frozen=True)
class ChangefeedStatus:
    """
    Status snapshot for health checks and monitoring.

    Attributes:
        name: Changefeed name
        phase: Current phase as string
        batches_received: Batches dispatched to on_update
        records_received: Change records in those batches
        connect_attempts: Total connect attempts
        reconnects: Successful connects after the first one
        current_backoff: Delay the next reconnect attempt would wait
        last_backoff_delay: Delay used for the most recent backoff, if any
        last_error: Description of the most recent connect/fetch error
        started_at: ISO timestamp when the changefeed started
        uptime_seconds: Time since the changefeed started
    """

    name: str
    phase: str
    batches_received: int
    records_received: int
    connect_attempts: int
    reconnects: int
    current_backoff: float
    last_backoff_delay: float | None
    last_error: str | None
    started_at: str
    uptime_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase,
            "batches_received": self.batches_received,
            "records_received": self.records_received,
            "connect_attempts": self.connect_attempts,
            "reconnects": self.reconnects,
            "current_backoff": self.current_backoff,
            "last_backoff_delay": self.last_backoff_delay,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "uptime_seconds": self.uptime_seconds,
        }


ExitListener = Callable[[ExitSignal], Any]

_RUNNING = object()


class SubscriptionStateMachine:
    """
    Actor driving one changefeed subscription.

    Args:
        handler: Application handler
        client: Feed client for the data source
        name: Changefeed name used in logs, spans and metrics
        config: Changefeed configuration
        tracer: Optional tracer (created from enable_tracing when None)
        enable_tracing: Whether to trace when no tracer is given
        enable_metrics: Whether to record OpenTelemetry metrics

    Usage is through changefeed.handle.start(), which calls initialize()
    and run() and wraps the machine in a ChangefeedHandle.
    """

    def __init__(
        self,
        handler: ChangefeedHandler,
        client: FeedClient,
        *,
        name: str,
        config: ChangefeedConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        enable_metrics: bool = True,
    ) -> None:
        self.name = name
        self.config = config or ChangefeedConfig()
        self._client = client
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._metrics = ChangefeedMetrics(changefeed_name=name, enable_metrics=enable_metrics)
        self._dispatcher = CallbackDispatcher(handler, name=name)
        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._fetcher = Fetcher(client, self._post_internal, name=name)
        self._backoff = BackoffState(self.config.get_backoff_policy())

        self._phase = Phase.CONNECTING
        self._query: Any = None
        self._connection: Any = None
        self._cursor: Any = None
        self._stopping: Any = _RUNNING

        self._generations = itertools.count(1)
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._reconnect_generation: int | None = None
        self._idle_timer: asyncio.TimerHandle | None = None
        self._idle_generation: int | None = None

        self._task: asyncio.Task[None] | None = None
        self._exit: asyncio.Future[ExitSignal] = asyncio.get_running_loop().create_future()
        self._listeners: list[ExitListener] = []
        self._unanswered: set[ReplyTo] = set()

        self._batches_received = 0
        self._records_received = 0
        self._connect_attempts = 0
        self._connected_once = False
        self._reconnects = 0
        self._last_backoff_delay: float | None = None
        self._last_error: str | None = None
        self._started_at = datetime.now(UTC)

    # Public surface used by ChangefeedHandle

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def handler(self) -> ChangefeedHandler:
        return self._dispatcher.handler

    @property
    def metrics(self) -> ChangefeedMetrics:
        return self._metrics

    @property
    def exit_signal(self) -> ExitSignal | None:
        return self._exit.result() if self._exit.done() else None

    async def initialize(self, args: Any) -> None:
        """
        Run the handler's initialize.

        Raises:
            ChangefeedStartError: If initialize returned Stop
        """
        directive = await self._dispatcher.initialize(args)
        if isinstance(directive, Stop):
            self._phase = Phase.STOPPED
            logger.warning(
                "Changefeed initialize returned stop",
                extra={"changefeed": self.name, "reason": repr(directive.reason)},
            )
            raise ChangefeedStartError(directive.reason)

        self._query = directive.query
        self._connection = directive.connection
        self._metrics.record_phase(self._phase.value)

    def run(self) -> None:
        """Start processing the inbox and connect to the data source."""
        if self._task is not None:
            return
        self._inbox.put_nowait(Connect())
        self._task = asyncio.create_task(self._run(), name=f"changefeed-{self.name}")
        logger.info(
            "Changefeed started",
            extra={
                "changefeed": self.name,
                "handler": type(self.handler).__name__,
            },
        )

    def post(self, event: Event) -> None:
        """
        Put an event in the inbox.

        Raises:
            ChangefeedStoppedError: If the changefeed has terminated
        """
        if self._phase is Phase.STOPPED:
            signal = self.exit_signal
            raise ChangefeedStoppedError(signal.reason if signal else NORMAL)
        self._inbox.put_nowait(event)

    async def wait(self) -> ExitSignal:
        return await asyncio.shield(self._exit)

    def add_listener(self, listener: ExitListener) -> None:
        """Register a dependent notified when the changefeed terminates."""
        if self._exit.done():
            self._notify(listener, self._exit.result())
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: ExitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def status(self) -> ChangefeedStatus:
        now = datetime.now(UTC)
        return ChangefeedStatus(
            name=self.name,
            phase=self._phase.value,
            batches_received=self._batches_received,
            records_received=self._records_received,
            connect_attempts=self._connect_attempts,
            reconnects=self._reconnects,
            current_backoff=self._backoff.current_delay,
            last_backoff_delay=self._last_backoff_delay,
            last_error=self._last_error,
            started_at=self._started_at.isoformat(),
            uptime_seconds=(now - self._started_at).total_seconds(),
        )

    # Event loop

    async def _run(self) -> None:
        reason: Any = NORMAL
        error: BaseException | None = None
        event: Event | None = None
        try:
            while self._stopping is _RUNNING:
                event = await self._inbox.get()
                if isinstance(event, IdleTimeout) and event.generation != self._idle_generation:
                    continue
                self._disarm_idle_timer()
                await self._handle(event)
                event = None
            reason = self._stopping
        except asyncio.CancelledError:
            reason = "cancelled"
            logger.warning("Changefeed task cancelled", extra={"changefeed": self.name})
        except Exception as exc:
            reason = exc
            error = exc
            logger.exception(
                "Changefeed crashed",
                extra={
                    "changefeed": self.name,
                    "phase": self._phase.value,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

        if event is not None:
            self._fail_event(event, ChangefeedStoppedError(reason))
        await self._teardown(reason, error)

    async def _handle(self, event: Event) -> None:
        if isinstance(event, FetchCompleted):
            await self._on_fetch_completed(event)
        elif isinstance(event, CallRequest):
            await self._on_call(event)
        elif isinstance(event, CastMessage):
            self._apply(await self._dispatcher.cast(event.message))
        elif isinstance(event, InfoMessage):
            self._apply(await self._dispatcher.info(event.message))
        elif isinstance(event, IdleTimeout):
            self._apply(await self._dispatcher.info(TIMEOUT))
        elif isinstance(event, Connect):
            await self._connect()
        elif isinstance(event, ReconnectTimer):
            if event.generation == self._reconnect_generation and (
                self._phase is Phase.BACKING_OFF
            ):
                self._reconnect_timer = None
                self._reconnect_generation = None
                await self._connect()
        elif isinstance(event, MigrateRequest):
            await self._on_migrate(event)
        elif isinstance(event, StopRequest):
            self._request_stop(event.reason)

    # Connecting

    async def _connect(self) -> None:
        if self._phase is not Phase.CONNECTING:
            self._set_phase(Phase.CONNECTING)

        self._connect_attempts += 1
        self._metrics.record_connect_attempt()

        with self._tracer.span(
            "changefeed.connect",
            {
                ATTR_CHANGEFEED_NAME: self.name,
                ATTR_CONNECT_ATTEMPT: self._backoff.attempts,
            },
        ):
            try:
                page = await self._open()
            except ConnectionClosedError as exc:
                self._record_error(exc)
                logger.warning(
                    "Connection closed while opening feed",
                    extra={"changefeed": self.name, "error": str(exc)},
                )
                self._request_stop(CONNECTION_CLOSED)
                return
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                self._metrics.record_connect_failure(type(exc).__name__)
                self._schedule_reconnect(exc)
                return

        if not isinstance(page, FeedPage):
            error = UnexpectedResultError("open", page)
            self._metrics.record_connect_failure(type(error).__name__)
            self._schedule_reconnect(error)
            return

        self._cursor = page.cursor
        if not is_batch(page.batch):
            await self._release_cursor()
            error = UnexpectedResultError("open", page.batch)
            self._metrics.record_connect_failure(type(error).__name__)
            self._schedule_reconnect(error)
            return

        self._backoff.reset()
        if self._connected_once:
            self._reconnects += 1
        self._connected_once = True
        self._set_phase(Phase.STREAMING)
        await self._dispatch_batch(page.batch)

    async def _open(self) -> Any:
        opening = self._client.open(self._query, self._connection)
        if self.config.connect_timeout is None:
            return await opening
        return await asyncio.wait_for(opening, self.config.connect_timeout)

    def _schedule_reconnect(self, error: BaseException) -> None:
        self._record_error(error)
        delay = self._backoff.advance()
        self._last_backoff_delay = delay
        self._set_phase(Phase.BACKING_OFF)

        logger.warning(
            "Changefeed backing off",
            extra={
                "changefeed": self.name,
                "delay_seconds": delay,
                "attempt": self._backoff.attempts,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

        generation = next(self._generations)
        self._reconnect_generation = generation
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._post_internal, ReconnectTimer(generation)
        )

    # Streaming

    async def _dispatch_batch(self, batch: Sequence[Any]) -> None:
        self._batches_received += 1
        self._records_received += len(batch)

        with self._tracer.span(
            "changefeed.update",
            {
                ATTR_CHANGEFEED_NAME: self.name,
                ATTR_HANDLER_NAME: type(self.handler).__name__,
                ATTR_BATCH_SIZE: len(batch),
            },
        ):
            with self._metrics.time_update() as timer:
                outcome = await self._dispatcher.update(batch)
        self._metrics.record_batch(len(batch), timer.duration_ms)

        if outcome.stops:
            self._request_stop(outcome.reason)
            return
        self._fetcher.begin(self._cursor)

    async def _on_fetch_completed(self, event: FetchCompleted) -> None:
        if not self._fetcher.complete(event.token):
            logger.debug(
                "Ignoring stale fetch result",
                extra={"changefeed": self.name, "token": event.token},
            )
            return

        if event.error is not None:
            error = event.error
            self._metrics.record_fetch_failure(type(error).__name__)
            if isinstance(error, ConnectionClosedError):
                self._record_error(error)
                logger.warning(
                    "Connection closed during fetch",
                    extra={"changefeed": self.name, "error": str(error)},
                )
                self._request_stop(CONNECTION_CLOSED)
                return
            if not is_transient_error(error):
                raise error
            await self._release_cursor()
            self._schedule_reconnect(error)
            return

        if not is_batch(event.batch):
            error = UnexpectedResultError("next", event.batch)
            self._metrics.record_fetch_failure(type(error).__name__)
            await self._release_cursor()
            self._schedule_reconnect(error)
            return

        self._backoff.reset()
        await self._dispatch_batch(event.batch)  # type: ignore[arg-type]

    # Messages

    async def _on_call(self, event: CallRequest) -> None:
        with self._tracer.span(
            "changefeed.call",
            {
                ATTR_CHANGEFEED_NAME: self.name,
                ATTR_PHASE: self._phase.value,
                ATTR_MESSAGE_TYPE: type(event.request).__name__,
            },
        ):
            outcome = await self._dispatcher.call(event.request, event.reply_to)
        self._unanswered = {reply_to for reply_to in self._unanswered if not reply_to.replied}
        if outcome.reply is not NO_REPLY:
            event.reply_to.reply(outcome.reply)
        elif not event.reply_to.replied:
            # Deferred or silently stopped; failed at teardown if still open
            self._unanswered.add(event.reply_to)
        self._apply(outcome)

    async def _on_migrate(self, event: MigrateRequest) -> None:
        with self._tracer.span(
            "changefeed.migrate",
            {ATTR_CHANGEFEED_NAME: self.name, ATTR_PHASE: self._phase.value},
        ):
            try:
                await self._dispatcher.migrate(event.from_version, event.extra, event.handler)
            except MigrationError as exc:
                logger.warning(
                    "State migration refused",
                    extra={"changefeed": self.name, "reason": repr(exc.reason)},
                )
                event.reply_to.fail(exc)
                return
        logger.info(
            "State migrated",
            extra={
                "changefeed": self.name,
                "from_version": repr(event.from_version),
                "handler": type(self.handler).__name__,
            },
        )
        event.reply_to.reply(None)

    def _apply(self, outcome: Outcome) -> None:
        if outcome.stops:
            self._request_stop(outcome.reason)
        elif outcome.timeout is not None:
            self._arm_idle_timer(outcome.timeout)

    # Stopping

    def _request_stop(self, reason: Any) -> None:
        if self._stopping is _RUNNING:
            self._stopping = reason

    async def _teardown(self, reason: Any, error: BaseException | None) -> None:
        self._cancel_timers()
        self._fetcher.cancel()
        await self._release_cursor()
        self._set_phase(Phase.STOPPED)
        await self._dispatcher.terminate(reason)

        unanswered, self._unanswered = self._unanswered, set()
        for reply_to in unanswered:
            reply_to.fail(ChangefeedStoppedError(reason))

        while not self._inbox.empty():
            self._fail_event(self._inbox.get_nowait(), ChangefeedStoppedError(reason))

        signal = ExitSignal(name=self.name, reason=reason, error=error)
        self._exit.set_result(signal)
        log = logger.error if error is not None else logger.info
        log(
            "Changefeed stopped",
            extra={"changefeed": self.name, "reason": repr(reason)},
        )

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            self._notify(listener, signal)

    async def _release_cursor(self) -> None:
        cursor, self._cursor = self._cursor, None
        if cursor is None:
            return
        try:
            await asyncio.wait_for(self._client.close(cursor), self.config.close_timeout)
        except Exception:
            logger.warning(
                "Failed to close cursor",
                extra={"changefeed": self.name},
                exc_info=True,
            )

    def _fail_event(self, event: Event, error: BaseException) -> None:
        if isinstance(event, (CallRequest, MigrateRequest)):
            event.reply_to.fail(error)

    def _notify(self, listener: ExitListener, signal: ExitSignal) -> None:
        try:
            listener(signal)
        except Exception:
            logger.warning(
                "Exit listener failed",
                extra={"changefeed": self.name},
                exc_info=True,
            )

    # Timers

    def _post_internal(self, event: Event) -> None:
        if self._phase is not Phase.STOPPED:
            self._inbox.put_nowait(event)

    def _arm_idle_timer(self, timeout: float) -> None:
        generation = next(self._generations)
        self._idle_generation = generation
        self._idle_timer = asyncio.get_running_loop().call_later(
            timeout, self._post_internal, IdleTimeout(generation)
        )

    def _disarm_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        self._idle_timer = None
        self._idle_generation = None

    def _cancel_timers(self) -> None:
        self._disarm_idle_timer()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
        self._reconnect_timer = None
        self._reconnect_generation = None

    # Bookkeeping

    def _set_phase(self, phase: Phase) -> None:
        old = self._phase
        if old is phase:
            return
        if not is_valid_transition(old, phase):
            raise RuntimeError(f"Invalid changefeed transition {old.value} -> {phase.value}")
        self._phase = phase
        self._metrics.record_phase(phase.value)

        extra: dict[str, Any] = {
            "changefeed": self.name,
            "from_phase": old.value,
            "to_phase": phase.value,
        }
        if phase is Phase.BACKING_OFF:
            extra["delay_seconds"] = self._last_backoff_delay
        logger.info("Changefeed phase changed", extra=extra)

    def _record_error(self, error: BaseException) -> None:
        self._last_error = f"{type(error).__name__}: {error}"


__all__ = [
    "CONNECTION_CLOSED",
    "NORMAL",
    "VALID_TRANSITIONS",
    "CallRequest",
    "CastMessage",
    "ChangefeedStatus",
    "Connect",
    "Event",
    "ExitListener",
    "ExitSignal",
    "IdleTimeout",
    "InfoMessage",
    "MigrateRequest",
    "Phase",
    "ReconnectTimer",
    "StopRequest",
    "SubscriptionStateMachine",
    "is_valid_transition",
]
