"""
Standard span attribute names for changefeed tracing.

Use these constants instead of string literals so spans from every
changefeed component carry consistent attribute keys.
"""

ATTR_CHANGEFEED_NAME = "changefeed.name"
"""Name of the changefeed."""

ATTR_PHASE = "changefeed.phase"
"""Phase of the changefeed when the span started."""

ATTR_BATCH_SIZE = "changefeed.batch.size"
"""Number of change records in a batch."""

ATTR_CONNECT_ATTEMPT = "changefeed.connect.attempt"
"""Number of consecutive failed connect attempts before this one."""

ATTR_HANDLER_NAME = "changefeed.handler"
"""Class name of the handler."""

ATTR_MESSAGE_TYPE = "changefeed.message.type"
"""Type name of a call request."""


__all__ = [
    "ATTR_BATCH_SIZE",
    "ATTR_CHANGEFEED_NAME",
    "ATTR_CONNECT_ATTEMPT",
    "ATTR_HANDLER_NAME",
    "ATTR_MESSAGE_TYPE",
    "ATTR_PHASE",
]
