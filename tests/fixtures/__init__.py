"""
Shared test fixtures for the changefeed library.

This module provides:
- RecordingHandler: Handler that records every callback and scripts replies
- ScriptedFeedClient: FeedClient whose open/next results are queued by tests
- wait_until: Poll a condition while the changefeed task runs

Usage:
    from tests.fixtures import RecordingHandler, ScriptedFeedClient, wait_until
"""

from tests.fixtures.clients import ScriptedFeedClient
from tests.fixtures.handlers import RecordingHandler
from tests.fixtures.waiting import wait_for_phase, wait_until

__all__ = [
    "RecordingHandler",
    "ScriptedFeedClient",
    "wait_for_phase",
    "wait_until",
]
