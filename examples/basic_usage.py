"""
Basic Usage Example

This example demonstrates the fundamental concepts of changefeeds:
- Writing a handler that returns directives
- Starting a changefeed against a data source
- Asking the running changefeed for its state with call()
- Stopping it and receiving the exit signal

Run with: python examples/basic_usage.py
"""

import asyncio
from typing import Any

from changefeed import (
    BaseChangefeedHandler,
    Next,
    Reply,
    Subscribe,
    start,
)
from changefeed.memory import InMemoryDataSource, InMemoryFeedClient, TableChanges

# =============================================================================
# Step 1: Define a Handler
# =============================================================================
# A handler never talks to the data source itself. Each callback receives
# the current state and returns a directive with the new state.


class InventoryCounter(BaseChangefeedHandler):
    """Keeps the total stock of all items in a table."""

    def initialize(self, args: dict[str, Any]) -> Subscribe:
        query = TableChanges("inventory", include_initial=True)
        return Subscribe(query, args["db"], {"total": 0, "changes": 0})

    def on_update(self, batch, state):
        total = state["total"]
        for record in batch:
            if record.old_val is not None:
                total -= record.old_val["stock"]
            if record.new_val is not None:
                total += record.new_val["stock"]
        return Next({"total": total, "changes": state["changes"] + len(batch)})

    def on_call(self, request, reply_to, state):
        return Reply(state, state)

    def terminate(self, reason, state):
        print(f"   terminate({reason!r}) with total={state['total']}")


# =============================================================================
# Step 2: Run It
# =============================================================================


async def main() -> None:
    print("=" * 60)
    print("Changefeed Basic Usage Example")
    print("=" * 60)

    db = InMemoryDataSource()
    db.insert("inventory", {"id": "apple", "stock": 10})
    db.insert("inventory", {"id": "pear", "stock": 4})

    print("\n1. Starting changefeed...")
    feed = await start(InventoryCounter(), {"db": db}, client=InMemoryFeedClient())
    await asyncio.sleep(0.05)
    print(f"   Phase: {feed.phase.value}")
    print(f"   State: {await feed.call('state')}")

    print("\n2. Writing to the data source...")
    db.update("inventory", "apple", {"stock": 7})
    db.insert("inventory", {"id": "plum", "stock": 12})
    db.delete("inventory", "pear")
    await asyncio.sleep(0.05)
    print(f"   State: {await feed.call('state')}")

    print("\n3. Status snapshot:")
    status = feed.status()
    print(f"   Batches received: {status.batches_received}")
    print(f"   Records received: {status.records_received}")

    print("\n4. Stopping...")
    signal = await feed.stop()
    print(f"   Exit reason: {signal.reason!r}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
