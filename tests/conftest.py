"""
Shared pytest fixtures for the changefeed library tests.

This module provides:
- Configuration fixtures (fast_config)
- Feed client fixtures (scripted_client, data_source, memory_client)
- Handler fixtures (recording_handler)
- Observability fixtures (mock_tracer, metric_reader)

All fixtures are function scoped.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest

from changefeed import (
    ChangefeedConfig,
    InMemoryDataSource,
    InMemoryFeedClient,
    create_fast_retry_config,
)
from changefeed.metrics import reset_meter
from changefeed.observability import MockTracer
from tests.fixtures import RecordingHandler, ScriptedFeedClient

# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry import metrics as otel_metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    otel_metrics = None  # type: ignore[assignment]
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> ChangefeedConfig:
    """
    Provide a config with millisecond backoff.

    Returns:
        ChangefeedConfig from create_fast_retry_config().
    """
    return create_fast_retry_config()


# =============================================================================
# Feed Client Fixtures
# =============================================================================


@pytest.fixture
def scripted_client() -> ScriptedFeedClient:
    """Provide a feed client whose results are scripted by the test."""
    return ScriptedFeedClient()


@pytest.fixture
def data_source() -> InMemoryDataSource:
    """
    Provide an in-memory data source with an empty "people" table.

    Returns:
        A fresh InMemoryDataSource.
    """
    source = InMemoryDataSource()
    source.create_table("people")
    return source


@pytest.fixture
def memory_client() -> InMemoryFeedClient:
    """Provide a feed client for the in-memory data source."""
    return InMemoryFeedClient()


# =============================================================================
# Handler Fixtures
# =============================================================================


@pytest.fixture
def recording_handler() -> RecordingHandler:
    """Provide a handler that records every callback."""
    return RecordingHandler()


@pytest.fixture
def start_kwargs(
    scripted_client: ScriptedFeedClient, fast_config: ChangefeedConfig
) -> dict[str, Any]:
    """
    Keyword arguments for start() using the scripted client.

    Tracing and metrics are disabled so tests do not depend on
    OpenTelemetry being installed.
    """
    return {
        "client": scripted_client,
        "config": fast_config,
        "enable_tracing": False,
        "enable_metrics": False,
    }


# =============================================================================
# Observability Fixtures
# =============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Provide a tracer that records span names and attributes."""
    return MockTracer()


@pytest.fixture
def metric_reader() -> Generator[Any, None, None]:
    """
    Provide an InMemoryMetricReader installed on a fresh MeterProvider.

    The module level meter is reset before and after the test so the
    changefeed picks up the test provider.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    reset_meter()
    original_get_meter = otel_metrics.get_meter
    otel_metrics.get_meter = provider.get_meter  # type: ignore[assignment]
    try:
        yield reader
    finally:
        otel_metrics.get_meter = original_get_meter  # type: ignore[assignment]
        reset_meter()
        provider.shutdown()
