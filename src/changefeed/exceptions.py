"""
Changefeed exceptions.

All exceptions inherit from ChangefeedError for easy catching.

Error taxonomy used by the state machine:
- TransientConnectionError (and the builtin network errors listed in
  TRANSIENT_EXCEPTIONS): recovered locally by backing off and reconnecting
- FatalQueryError: not retried, the changefeed crashes with the error
- ConnectionClosedError: not retried, the changefeed stops with reason
  "connection_closed"
"""

import asyncio
from typing import Any


class ChangefeedError(Exception):
    """Base exception for changefeed errors."""

    pass


class ChangefeedConfigError(ChangefeedError, ValueError):
    """Raised when changefeed configuration is invalid."""

    pass


class ChangefeedStartError(ChangefeedError):
    """Raised by start() when the handler's initialize returns Stop."""

    def __init__(self, reason: Any) -> None:
        self.reason = reason
        super().__init__(f"Changefeed failed to start: {reason!r}")


class HandlerReturnError(ChangefeedError):
    """Raised when a handler callback returns a directive it may not return."""

    def __init__(self, callback: str, value: Any) -> None:
        self.callback = callback
        self.value = value
        super().__init__(f"Handler callback {callback} returned an invalid value: {value!r}")


class TransientConnectionError(ChangefeedError):
    """Raised by a feed client when the data source is temporarily unavailable."""

    pass


class UnexpectedResultError(TransientConnectionError):
    """Raised when a feed client produces a result of an unrecognized shape."""

    def __init__(self, operation: str, value: Any) -> None:
        self.operation = operation
        self.value = value
        super().__init__(f"Unexpected result from {operation}: {type(value).__name__}")


class FatalQueryError(ChangefeedError):
    """Raised by a feed client when the data source rejects the query."""

    pass


class ConnectionClosedError(ChangefeedError):
    """Raised by a feed client when the connection was closed out-of-band."""

    pass


class CallTimeoutError(ChangefeedError, TimeoutError):
    """Raised when a synchronous call receives no reply in time."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Changefeed call timed out after {timeout}s")


class ChangefeedStoppedError(ChangefeedError):
    """Raised when messaging a changefeed that has terminated."""

    def __init__(self, reason: Any) -> None:
        self.reason = reason
        super().__init__(f"Changefeed is stopped: {reason!r}")


class MigrationError(ChangefeedError):
    """Raised when a handler refuses a state migration."""

    def __init__(self, reason: Any) -> None:
        self.reason = reason
        super().__init__(f"State migration failed: {reason!r}")


class FetcherBusyError(ChangefeedError):
    """Raised when a fetch is started while another one is outstanding."""

    pass


# Errors that move the changefeed into backoff instead of stopping it.
# ConnectionClosedError and FatalQueryError never match.
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientConnectionError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


def is_transient_error(error: BaseException) -> bool:
    """
    Check if an error raised by a feed client should be retried.

    Args:
        error: The error raised by open() or next()

    Returns:
        True if the changefeed should back off and reconnect
    """
    if isinstance(error, (ConnectionClosedError, FatalQueryError, CallTimeoutError)):
        return False
    return isinstance(error, TRANSIENT_EXCEPTIONS)


__all__ = [
    "ChangefeedError",
    "ChangefeedConfigError",
    "ChangefeedStartError",
    "HandlerReturnError",
    "TransientConnectionError",
    "UnexpectedResultError",
    "FatalQueryError",
    "ConnectionClosedError",
    "CallTimeoutError",
    "ChangefeedStoppedError",
    "MigrationError",
    "FetcherBusyError",
    "TRANSIENT_EXCEPTIONS",
    "is_transient_error",
]
