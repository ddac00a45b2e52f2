"""
Configuration for changefeeds.

This module provides:
- ChangefeedConfig: Backoff, timeout and shutdown settings for one changefeed
- create_fast_retry_config: Short delays for tests and local development
"""

from __future__ import annotations

from dataclasses import dataclass

from changefeed.backoff import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_DELAY,
    DEFAULT_MULTIPLIER,
    BackoffPolicy,
)
from changefeed.exceptions import ChangefeedConfigError


@dataclass(frozen=True)
class ChangefeedConfig:
    """
    Configuration for a changefeed.

    Attributes:
        initial_backoff: Seconds to wait before the first reconnect attempt
        max_backoff: Maximum seconds between reconnect attempts
        backoff_multiplier: Growth factor for consecutive reconnect delays
        connect_timeout: Max seconds for a single connect attempt (None = no limit).
            A timed out attempt is treated as a transient failure.
        call_timeout: Default seconds a caller waits for a reply to call()
        close_timeout: Max seconds to wait for the cursor to be released on stop
        stop_timeout: Default seconds stop() waits for the changefeed to terminate

    Example:
        >>> config = ChangefeedConfig(initial_backoff=0.5, max_backoff=30.0)
        >>> config.get_backoff_policy().next(0.5)
        1.0
    """

    # Reconnect backoff
    initial_backoff: float = DEFAULT_INITIAL_DELAY
    max_backoff: float = DEFAULT_MAX_DELAY
    backoff_multiplier: float = DEFAULT_MULTIPLIER

    # Timeouts
    connect_timeout: float | None = None
    call_timeout: float = 5.0
    close_timeout: float = 5.0
    stop_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.initial_backoff <= 0:
            raise ChangefeedConfigError(
                f"initial_backoff must be positive, got {self.initial_backoff}. "
                "Use a value like 1.0 (default)."
            )

        if self.max_backoff < self.initial_backoff:
            raise ChangefeedConfigError(
                f"max_backoff ({self.max_backoff}) must be >= "
                f"initial_backoff ({self.initial_backoff})."
            )

        if self.backoff_multiplier <= 1.0:
            raise ChangefeedConfigError(
                f"backoff_multiplier must be > 1.0, got {self.backoff_multiplier}. "
                "Use 2.0 (default) to double the delay after each failure."
            )

        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ChangefeedConfigError(
                f"connect_timeout must be positive or None, got {self.connect_timeout}."
            )

        for name in ("call_timeout", "close_timeout", "stop_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ChangefeedConfigError(f"{name} must be positive, got {value}.")

    def get_backoff_policy(self) -> BackoffPolicy:
        """
        Build the reconnect backoff policy from this config.

        Returns:
            BackoffPolicy configured with this config's backoff settings
        """
        return BackoffPolicy(
            initial_delay=self.initial_backoff,
            max_delay=self.max_backoff,
            multiplier=self.backoff_multiplier,
        )


def create_fast_retry_config(**overrides: float | None) -> ChangefeedConfig:
    """
    Create a config with millisecond backoff for tests and local development.

    Args:
        **overrides: Any ChangefeedConfig field to override

    Returns:
        ChangefeedConfig with short delays
    """
    settings: dict[str, float | None] = {
        "initial_backoff": 0.01,
        "max_backoff": 0.08,
        "call_timeout": 1.0,
        "close_timeout": 1.0,
        "stop_timeout": 5.0,
    }
    settings.update(overrides)
    return ChangefeedConfig(**settings)  # type: ignore[arg-type]


__all__ = [
    "ChangefeedConfig",
    "create_fast_retry_config",
]
