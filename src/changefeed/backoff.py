"""
Reconnect backoff for changefeeds.

The delay before each reconnect attempt grows exponentially from
``initial_delay`` up to ``max_delay`` and returns to ``initial_delay``
after every successful connect.

This module provides:
- BackoffPolicy: Pure function from the previous delay to the next one
- BackoffState: Per-changefeed delay tracking
"""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 64.0
DEFAULT_MULTIPLIER = 2.0


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff.

    Attributes:
        initial_delay: Delay in seconds before the first reconnect attempt
        max_delay: Upper bound for any delay in seconds
        multiplier: Growth factor applied after every failed attempt

    Example:
        >>> policy = BackoffPolicy(initial_delay=1.0, max_delay=8.0)
        >>> policy.next(1.0)
        2.0
        >>> policy.next(8.0)
        8.0
    """

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_MULTIPLIER

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive, got {self.initial_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.multiplier <= 1.0:
            raise ValueError(f"multiplier must be > 1.0, got {self.multiplier}.")

    def next(self, previous_delay: float) -> float:
        """
        Compute the delay that follows ``previous_delay``.

        Args:
            previous_delay: The delay used for the last attempt

        Returns:
            The next delay in seconds, never above max_delay
        """
        return min(previous_delay * self.multiplier, self.max_delay)


@dataclass
class BackoffState:
    """
    Tracks the delay to use for the next reconnect attempt.

    ``advance()`` hands out the current delay and moves to the next one,
    ``reset()`` goes back to the initial delay after a successful connect.
    """

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    current_delay: float = field(init=False)
    attempts: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.current_delay = self.policy.initial_delay

    def advance(self) -> float:
        """Return the delay to wait now and schedule the next, longer one."""
        delay = self.current_delay
        self.current_delay = self.policy.next(delay)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        if self.attempts:
            logger.debug(
                "Backoff reset",
                extra={"failed_attempts": self.attempts, "delay_seconds": self.current_delay},
            )
        self.current_delay = self.policy.initial_delay
        self.attempts = 0


__all__ = [
    "BackoffPolicy",
    "BackoffState",
    "DEFAULT_INITIAL_DELAY",
    "DEFAULT_MAX_DELAY",
    "DEFAULT_MULTIPLIER",
]
