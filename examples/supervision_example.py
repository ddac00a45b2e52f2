"""
Supervision Example

This example demonstrates how a changefeed survives an unreliable
data source:
- Reconnecting with exponential backoff after transient failures
- Stopping when the connection is closed out-of-band
- Linking a dependent that is told why the changefeed exited
- Forwarding changes to subscribers with EventForwarder

Run with: python examples/supervision_example.py
"""

import asyncio
import logging

from changefeed import (
    EventForwarder,
    ExitSignal,
    TransientConnectionError,
    create_fast_retry_config,
    start,
)
from changefeed.memory import InMemoryDataSource, InMemoryFeedClient, TableChanges


def on_exit(signal: ExitSignal) -> None:
    print(f"   [link] {signal.name} exited: reason={signal.reason!r} crashed={signal.crashed}")


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="   %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("Changefeed Supervision Example")
    print("=" * 60)

    db = InMemoryDataSource()
    db.create_table("orders")

    subscribers: list[list[tuple]] = [[], []]

    def publish(notification: tuple) -> None:
        for inbox in subscribers:
            inbox.append(notification)

    print("\n1. The data source is down for the first two attempts...")
    db.fail_next_open(TransientConnectionError("database restarting"), times=2)
    feed = await start(
        EventForwarder(),
        {"query": TableChanges("orders"), "connection": db, "publish": publish},
        client=InMemoryFeedClient(),
        config=create_fast_retry_config(initial_backoff=0.05, max_backoff=0.2),
        name="orders",
        link=on_exit,
    )
    await asyncio.sleep(0.3)
    print(f"   Phase after retries: {feed.phase.value}")

    print("\n2. Orders arrive and are forwarded to both subscribers...")
    db.insert("orders", {"id": 1, "item": "book"})
    db.update("orders", 1, {"item": "two books"})
    await asyncio.sleep(0.05)
    for index, inbox in enumerate(subscribers):
        print(f"   Subscriber {index}: {inbox}")

    print("\n3. A network blip breaks the feed; it reconnects...")
    db.break_feeds(ConnectionResetError("connection reset by peer"))
    await asyncio.sleep(0.2)
    print(f"   Reconnects: {feed.status().reconnects}")

    print("\n4. The server closes the connection...")
    db.close_feeds()
    signal = await feed.wait(timeout=1.0)
    print(f"   Final reason: {signal.reason!r}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
