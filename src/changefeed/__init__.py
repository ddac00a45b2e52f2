"""
changefeed - Supervised change-feed subscriptions for asyncio.

This library provides:
- A handler contract for reacting to batches of change records
- A subscription state machine that connects, streams, backs off and stops
- Capped exponential reconnect backoff
- Synchronous calls, casts and out-of-band messages to a running feed
- State migration, idle timeouts and exit notification for dependents
- An in-memory data source and ready-made handler patterns
- Optional OpenTelemetry tracing and metrics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("changefeed-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from changefeed.backoff import BackoffPolicy, BackoffState
from changefeed.client import FeedClient, FeedPage, is_batch
from changefeed.config import ChangefeedConfig, create_fast_retry_config
from changefeed.directives import (
    KEEP,
    NO_REPLY,
    TIMEOUT,
    Directive,
    MigrateError,
    MigrateOk,
    Next,
    NoReply,
    Reply,
    Stop,
    Subscribe,
)
from changefeed.dispatcher import Action, CallbackDispatcher, Outcome, ReplyTo
from changefeed.exceptions import (
    TRANSIENT_EXCEPTIONS,
    CallTimeoutError,
    ChangefeedConfigError,
    ChangefeedError,
    ChangefeedStartError,
    ChangefeedStoppedError,
    ConnectionClosedError,
    FatalQueryError,
    FetcherBusyError,
    HandlerReturnError,
    MigrationError,
    TransientConnectionError,
    UnexpectedResultError,
    is_transient_error,
)
from changefeed.fetcher import FetchCompleted, Fetcher
from changefeed.handle import ChangefeedHandle, start
from changefeed.handler import BaseChangefeedHandler, ChangefeedHandler
from changefeed.machine import (
    CONNECTION_CLOSED,
    NORMAL,
    ChangefeedStatus,
    ExitSignal,
    Phase,
    SubscriptionStateMachine,
)
from changefeed.memory import InMemoryDataSource, InMemoryFeedClient, TableChanges
from changefeed.metrics import ChangefeedMetrics, MetricSnapshot
from changefeed.patterns import CollectionMirror, EventForwarder, RecordMirror
from changefeed.records import ChangeKind, ChangeRecord, parse_batch

__all__ = [
    "__version__",
    # Entry point
    "start",
    "ChangefeedHandle",
    # Handlers
    "ChangefeedHandler",
    "BaseChangefeedHandler",
    "RecordMirror",
    "CollectionMirror",
    "EventForwarder",
    # Directives
    "Directive",
    "Subscribe",
    "Next",
    "Reply",
    "NoReply",
    "Stop",
    "MigrateOk",
    "MigrateError",
    "KEEP",
    "NO_REPLY",
    "TIMEOUT",
    # Records
    "ChangeKind",
    "ChangeRecord",
    "parse_batch",
    # Feed clients
    "FeedClient",
    "FeedPage",
    "is_batch",
    "InMemoryDataSource",
    "InMemoryFeedClient",
    "TableChanges",
    # Engine
    "Action",
    "Outcome",
    "ReplyTo",
    "CallbackDispatcher",
    "Fetcher",
    "FetchCompleted",
    "SubscriptionStateMachine",
    "Phase",
    "ExitSignal",
    "ChangefeedStatus",
    "NORMAL",
    "CONNECTION_CLOSED",
    # Configuration
    "ChangefeedConfig",
    "create_fast_retry_config",
    "BackoffPolicy",
    "BackoffState",
    # Metrics
    "ChangefeedMetrics",
    "MetricSnapshot",
    # Exceptions
    "ChangefeedError",
    "ChangefeedConfigError",
    "ChangefeedStartError",
    "ChangefeedStoppedError",
    "CallTimeoutError",
    "HandlerReturnError",
    "TransientConnectionError",
    "UnexpectedResultError",
    "FatalQueryError",
    "ConnectionClosedError",
    "MigrationError",
    "FetcherBusyError",
    "TRANSIENT_EXCEPTIONS",
    "is_transient_error",
]
