"""
Asynchronous batch fetching for changefeeds.

The Fetcher pulls the next batch from a cursor in a separate asyncio task
so the changefeed keeps processing messages while waiting for changes.
Each pull is tagged with a correlation token and its outcome is delivered
as a single FetchCompleted event. A result whose token does not match the
currently pending fetch is stale and must be discarded by the receiver.

This module provides:
- FetchCompleted: Outcome of one pull (batch or error)
- PendingFetch: An in-flight pull
- Fetcher: Starts and cancels pulls, at most one at a time
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from changefeed.client import FeedClient
from changefeed.exceptions import FetcherBusyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchCompleted:
    """
    Outcome of a pull.

    Exactly one of ``batch`` and ``error`` is meaningful: ``error`` is set
    when the pull failed, otherwise ``batch`` holds the result.
    """

    token: int
    batch: Sequence[Any] | None = None
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class PendingFetch:
    """An in-flight pull identified by its correlation token."""

    token: int
    task: asyncio.Task[Any] = field(repr=False)

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        self.task.cancel()


class Fetcher:
    """
    Runs one pull at a time against a feed client.

    Args:
        client: Feed client providing next()
        deliver: Called with the FetchCompleted of every pull that was not
            cancelled. Must not block (typically ``queue.put_nowait``).
        name: Changefeed name used in logs and task names

    Example:
        >>> fetcher = Fetcher(client, inbox.put_nowait, name="people")
        >>> pending = fetcher.begin(cursor)
        >>> # ... later, when the FetchCompleted event is handled:
        >>> fetcher.complete(event.token)
    """

    def __init__(
        self,
        client: FeedClient,
        deliver: Callable[[FetchCompleted], None],
        name: str = "changefeed",
    ) -> None:
        self._client = client
        self._deliver = deliver
        self._name = name
        self._tokens = itertools.count(1)
        self._pending: PendingFetch | None = None

    @property
    def pending(self) -> PendingFetch | None:
        return self._pending

    def begin(self, cursor: Any) -> PendingFetch:
        """
        Start pulling the next batch from ``cursor``.

        Raises:
            FetcherBusyError: If a previous pull has not been completed or cancelled
        """
        if self._pending is not None:
            raise FetcherBusyError(
                f"Fetch {self._pending.token} is still outstanding for {self._name}"
            )

        token = next(self._tokens)
        task = asyncio.create_task(
            self._client.next(cursor),
            name=f"changefeed-fetch-{self._name}-{token}",
        )
        task.add_done_callback(lambda t: self._on_done(token, t))
        self._pending = PendingFetch(token=token, task=task)
        logger.debug("Fetch started", extra={"changefeed": self._name, "token": token})
        return self._pending

    def is_current(self, token: int) -> bool:
        """Check whether ``token`` belongs to the pending pull."""
        return self._pending is not None and self._pending.token == token

    def complete(self, token: int) -> bool:
        """
        Mark the pending pull as consumed.

        Returns:
            True if ``token`` was current, False for a stale token
        """
        if not self.is_current(token):
            return False
        self._pending = None
        return True

    def cancel(self) -> None:
        """Cancel the pending pull. Its result, if any, is never delivered."""
        if self._pending is None:
            return
        logger.debug(
            "Fetch cancelled",
            extra={"changefeed": self._name, "token": self._pending.token},
        )
        self._pending.cancel()
        self._pending = None

    def _on_done(self, token: int, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._deliver(FetchCompleted(token=token, error=error))
        else:
            self._deliver(FetchCompleted(token=token, batch=task.result()))


__all__ = [
    "FetchCompleted",
    "Fetcher",
    "PendingFetch",
]
