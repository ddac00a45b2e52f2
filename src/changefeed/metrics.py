"""
OpenTelemetry metrics for changefeeds.

The metrics degrade to no-ops when OpenTelemetry is not installed, so
recording is always safe.

Metrics Exposed:
    - changefeed.batches.received (Counter): Batches dispatched to on_update
    - changefeed.records.received (Counter): Change records in those batches
    - changefeed.connect.attempts (Counter): Connect attempts
    - changefeed.connect.failures (Counter): Failed connect attempts, by error type
    - changefeed.fetch.failures (Counter): Failed fetches, by error type
    - changefeed.update.duration (Histogram): on_update time in milliseconds
    - changefeed.phase (Gauge): Current phase (numeric)

All metrics carry the 'changefeed' attribute with the changefeed name.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


class PhaseValue(IntEnum):
    """Numeric values for phases as gauge values."""

    UNKNOWN = 0
    CONNECTING = 1
    STREAMING = 2
    BACKING_OFF = 3
    STOPPED = 4


PHASE_MAPPING: dict[str, int] = {
    "connecting": PhaseValue.CONNECTING,
    "streaming": PhaseValue.STREAMING,
    "backing_off": PhaseValue.BACKING_OFF,
    "stopped": PhaseValue.STOPPED,
}


_meter: Any = None


def _get_meter() -> Any:
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("changefeed", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """Reset the global meter instance (for tests)."""
    global _meter
    _meter = None


class NoOpCounter:
    """Counter stand-in when OpenTelemetry is not available."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram stand-in when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass
class MetricSnapshot:
    """
    Snapshot of the values recorded for one changefeed.

    Attributes:
        batches_received: Batches dispatched to on_update
        records_received: Records in those batches
        connect_attempts: Connect attempts
        connect_failures: Failed connect attempts
        fetch_failures: Failed fetches
        total_update_time_ms: Sum of on_update durations
        current_phase: Current phase value
        current_phase_name: Current phase name
    """

    batches_received: int = 0
    records_received: int = 0
    connect_attempts: int = 0
    connect_failures: int = 0
    fetch_failures: int = 0
    total_update_time_ms: float = 0.0
    current_phase: int = PhaseValue.UNKNOWN
    current_phase_name: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches_received": self.batches_received,
            "records_received": self.records_received,
            "connect_attempts": self.connect_attempts,
            "connect_failures": self.connect_failures,
            "fetch_failures": self.fetch_failures,
            "total_update_time_ms": self.total_update_time_ms,
            "current_phase": self.current_phase,
            "current_phase_name": self.current_phase_name,
        }


@dataclass
class ChangefeedMetrics:
    """
    Metric instruments for one changefeed.

    Attributes:
        changefeed_name: Name used as the 'changefeed' metric attribute
        enable_metrics: Whether metrics are enabled (default True)

    Example:
        >>> metrics = ChangefeedMetrics("people")
        >>> with metrics.time_update() as timer:
        ...     outcome = await dispatcher.update(batch)
        >>> metrics.record_batch(len(batch), timer.duration_ms)
    """

    changefeed_name: str
    enable_metrics: bool = True

    _meter: Any = field(default=None, init=False, repr=False)
    _batches_counter: Any = field(default=None, init=False, repr=False)
    _records_counter: Any = field(default=None, init=False, repr=False)
    _connect_attempts_counter: Any = field(default=None, init=False, repr=False)
    _connect_failures_counter: Any = field(default=None, init=False, repr=False)
    _fetch_failures_counter: Any = field(default=None, init=False, repr=False)
    _update_duration_histogram: Any = field(default=None, init=False, repr=False)
    _snapshot: MetricSnapshot = field(default_factory=MetricSnapshot, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        self._meter = _get_meter()

        if self._meter is None:
            self._setup_noop()
            return

        self._batches_counter = self._meter.create_counter(
            name="changefeed.batches.received",
            unit="batches",
            description="Batches dispatched to the handler",
        )
        self._records_counter = self._meter.create_counter(
            name="changefeed.records.received",
            unit="records",
            description="Change records dispatched to the handler",
        )
        self._connect_attempts_counter = self._meter.create_counter(
            name="changefeed.connect.attempts",
            unit="attempts",
            description="Attempts to open the feed",
        )
        self._connect_failures_counter = self._meter.create_counter(
            name="changefeed.connect.failures",
            unit="attempts",
            description="Failed attempts to open the feed",
        )
        self._fetch_failures_counter = self._meter.create_counter(
            name="changefeed.fetch.failures",
            unit="fetches",
            description="Failed fetches of the next batch",
        )
        self._update_duration_histogram = self._meter.create_histogram(
            name="changefeed.update.duration",
            unit="ms",
            description="Handler on_update duration in milliseconds",
        )
        self._meter.create_observable_gauge(
            name="changefeed.phase",
            callbacks=[self._observe_phase],
            unit="1",
            description="Current changefeed phase (numeric)",
        )

    def _setup_noop(self) -> None:
        self._batches_counter = NoOpCounter()
        self._records_counter = NoOpCounter()
        self._connect_attempts_counter = NoOpCounter()
        self._connect_failures_counter = NoOpCounter()
        self._fetch_failures_counter = NoOpCounter()
        self._update_duration_histogram = NoOpHistogram()

    def _observe_phase(self, options: Any) -> Any:
        if OTEL_METRICS_AVAILABLE:
            from opentelemetry.metrics import Observation

            yield Observation(
                value=self._snapshot.current_phase,
                attributes={
                    "changefeed": self.changefeed_name,
                    "phase_name": self._snapshot.current_phase_name,
                },
            )

    @property
    def _attrs(self) -> dict[str, Any]:
        return {"changefeed": self.changefeed_name}

    def record_batch(self, record_count: int, duration_ms: float) -> None:
        """Record a batch dispatched to on_update."""
        self._batches_counter.add(1, self._attrs)
        self._records_counter.add(record_count, self._attrs)
        self._update_duration_histogram.record(duration_ms, self._attrs)
        self._snapshot.batches_received += 1
        self._snapshot.records_received += record_count
        self._snapshot.total_update_time_ms += duration_ms

    def record_connect_attempt(self) -> None:
        self._connect_attempts_counter.add(1, self._attrs)
        self._snapshot.connect_attempts += 1

    def record_connect_failure(self, error_type: str) -> None:
        self._connect_failures_counter.add(1, {**self._attrs, "error.type": error_type})
        self._snapshot.connect_failures += 1

    def record_fetch_failure(self, error_type: str) -> None:
        self._fetch_failures_counter.add(1, {**self._attrs, "error.type": error_type})
        self._snapshot.fetch_failures += 1

    def record_phase(self, phase: str) -> None:
        self._snapshot.current_phase_name = phase.lower()
        self._snapshot.current_phase = PHASE_MAPPING.get(
            self._snapshot.current_phase_name, PhaseValue.UNKNOWN
        )

    @contextmanager
    def time_update(self) -> Generator[_Timer, None, None]:
        """Time an on_update invocation."""
        timer = _Timer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()

    def get_snapshot(self) -> MetricSnapshot:
        """Return a copy of the recorded values."""
        return MetricSnapshot(**self._snapshot.to_dict())

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics and OTEL_METRICS_AVAILABLE


class _Timer:
    """Wall-clock timer used by time_update."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_ms(self) -> float:
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return (end - self._start) * 1000


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "PHASE_MAPPING",
    "PhaseValue",
    "ChangefeedMetrics",
    "MetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
