"""
Unit tests for the subscription state machine.

Tests cover:
- Phase enum and transition table
- Connecting, streaming and batch ordering
- Stale fetch results
- Reconnect with backoff after transient connect and fetch failures
- Unrecognized result shapes
- Out-of-band connection close and fatal errors
- Stop directives from on_update
- Cursor release and terminate on every exit path
- Idle timeouts
- Status snapshots and tracing
"""

import asyncio

import pytest

from changefeed import (
    CONNECTION_CLOSED,
    NORMAL,
    ChangefeedHandle,
    ChangefeedStatus,
    ConnectionClosedError,
    FatalQueryError,
    FeedPage,
    FetchCompleted,
    HandlerReturnError,
    Next,
    Phase,
    Stop,
    SubscriptionStateMachine,
    TransientConnectionError,
    create_fast_retry_config,
    start,
)
from changefeed.machine import VALID_TRANSITIONS, is_valid_transition
from tests.fixtures import RecordingHandler, ScriptedFeedClient, wait_for_phase, wait_until

# Phase Tests


class TestPhaseEnum:
    """Tests for the Phase enum."""

    def test_values(self):
        """Test phase values."""
        assert Phase.CONNECTING.value == "connecting"
        assert Phase.STREAMING.value == "streaming"
        assert Phase.BACKING_OFF.value == "backing_off"
        assert Phase.STOPPED.value == "stopped"

    def test_all_phases_exist(self):
        """Test the four phases exist."""
        assert len(list(Phase)) == 4


class TestValidTransitions:
    """Tests for VALID_TRANSITIONS."""

    def test_connecting_transitions(self):
        """Test valid transitions from CONNECTING."""
        assert VALID_TRANSITIONS[Phase.CONNECTING] == {
            Phase.STREAMING,
            Phase.BACKING_OFF,
            Phase.STOPPED,
        }

    def test_streaming_transitions(self):
        """Test valid transitions from STREAMING."""
        assert VALID_TRANSITIONS[Phase.STREAMING] == {Phase.BACKING_OFF, Phase.STOPPED}

    def test_backing_off_transitions(self):
        """Test valid transitions from BACKING_OFF."""
        assert VALID_TRANSITIONS[Phase.BACKING_OFF] == {Phase.CONNECTING, Phase.STOPPED}

    def test_stopped_is_terminal(self):
        """Test STOPPED has no outgoing transitions."""
        assert VALID_TRANSITIONS[Phase.STOPPED] == set()

    @pytest.mark.parametrize(
        "from_phase,to_phase,expected",
        [
            (Phase.CONNECTING, Phase.STREAMING, True),
            (Phase.STREAMING, Phase.CONNECTING, False),
            (Phase.BACKING_OFF, Phase.STREAMING, False),
            (Phase.STOPPED, Phase.CONNECTING, False),
        ],
    )
    def test_is_valid_transition(self, from_phase, to_phase, expected):
        """Test is_valid_transition against the table."""
        assert is_valid_transition(from_phase, to_phase) is expected


# Streaming Tests


class TestStreaming:
    """Tests for connecting and dispatching batches."""

    @pytest.mark.asyncio
    async def test_initial_batch_dispatched(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test the first batch from open() goes to on_update."""
        scripted_client.script_open(FeedPage(cursor="c1", batch=["r1"]))
        feed = await start(recording_handler, {"x": 1}, **start_kwargs)

        await wait_until(lambda: scripted_client.next_calls == 1)
        assert recording_handler.init_args == [{"x": 1}]
        assert scripted_client.opened == [("query", "connection")]
        assert recording_handler.batches == [["r1"]]
        assert feed.phase is Phase.STREAMING
        assert scripted_client.next_cursors == ["c1"]
        await feed.stop()

    @pytest.mark.asyncio
    async def test_batches_dispatched_in_order_once(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test every batch is dispatched exactly once, in order."""
        scripted_client.script_open(FeedPage(cursor="c1", batch=["r1"]))
        feed = await start(recording_handler, None, **start_kwargs)

        scripted_client.push(["r2"])
        scripted_client.push(["r3", "r4"])
        scripted_client.push([])
        scripted_client.push(["r5"])
        await wait_until(lambda: len(recording_handler.batches) == 5)

        assert recording_handler.batches == [["r1"], ["r2"], ["r3", "r4"], [], ["r5"]]
        assert await feed.call("get") == 5
        await feed.stop()

    @pytest.mark.asyncio
    async def test_one_fetch_per_dispatched_batch(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a new fetch starts only after the previous batch was handled."""
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        scripted_client.push(["a"])
        scripted_client.push(["b"])
        await wait_until(lambda: len(recording_handler.batches) == 3)
        await wait_until(lambda: scripted_client.next_calls == 3)
        await asyncio.sleep(0.02)

        assert scripted_client.next_calls == len(recording_handler.batches)
        await feed.stop()

    @pytest.mark.asyncio
    async def test_stale_fetch_result_ignored(self, recording_handler, scripted_client):
        """Test a result with an unknown token never reaches on_update."""
        machine = SubscriptionStateMachine(
            recording_handler,
            scripted_client,
            name="stale",
            config=create_fast_retry_config(),
            enable_tracing=False,
            enable_metrics=False,
        )
        await machine.initialize(None)
        machine.run()
        feed = ChangefeedHandle(machine)
        await wait_until(lambda: scripted_client.next_calls == 1)

        machine.post(FetchCompleted(token=999, batch=["stale"]))
        machine.post(FetchCompleted(token=998, error=ConnectionResetError()))
        assert await feed.call("get") == 0

        assert recording_handler.batches == [[]]
        assert feed.phase is Phase.STREAMING
        assert scripted_client.closed == []

        scripted_client.push(["fresh"])
        await wait_until(lambda: len(recording_handler.batches) == 2)
        assert recording_handler.batches[1] == ["fresh"]
        await feed.stop()


# Reconnect Tests


class TestReconnect:
    """Tests for backoff and reconnect."""

    @pytest.mark.asyncio
    async def test_transient_connect_failures_retried(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test transient open() failures back off and retry."""
        scripted_client.script_open(
            ConnectionRefusedError("refused"),
            TransientConnectionError("unavailable"),
            FeedPage(cursor="c3", batch=["r"]),
        )
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: recording_handler.batches == [["r"]])

        status = feed.status()
        assert len(scripted_client.opened) == 3
        assert status.connect_attempts == 3
        assert status.reconnects == 0
        assert status.last_backoff_delay == 0.02
        assert status.current_backoff == 0.01
        assert "TransientConnectionError" in status.last_error
        await feed.stop()

    @pytest.mark.asyncio
    async def test_backing_off_phase(self, recording_handler, scripted_client):
        """Test the changefeed waits in BACKING_OFF and still answers calls."""
        scripted_client.script_open(OSError("network unreachable"))
        feed = await start(
            recording_handler,
            None,
            client=scripted_client,
            config=create_fast_retry_config(initial_backoff=0.5, max_backoff=1.0),
            enable_tracing=False,
            enable_metrics=False,
        )
        await wait_for_phase(feed, Phase.BACKING_OFF)

        assert await feed.call("get") == 0
        assert feed.status().last_backoff_delay == 0.5

        signal = await feed.stop()
        assert signal.normal
        assert recording_handler.terminated == [(NORMAL, 0)]
        await asyncio.sleep(0.05)
        assert len(scripted_client.opened) == 1

    @pytest.mark.asyncio
    async def test_transient_fetch_failure_reconnects(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a transient fetch error releases the cursor and reconnects."""
        scripted_client.script_open(
            FeedPage(cursor="c1", batch=[]),
            FeedPage(cursor="c2", batch=["x"]),
        )
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        scripted_client.push(ConnectionResetError("reset"))
        await wait_until(lambda: len(recording_handler.batches) == 2)

        assert recording_handler.batches == [[], ["x"]]
        assert scripted_client.closed == ["c1"]
        assert feed.status().reconnects == 1
        assert feed.phase is Phase.STREAMING
        await feed.stop()
        assert scripted_client.closed == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_backoff_grows_and_caps(self, recording_handler, scripted_client):
        """Test consecutive failures double the delay up to the cap."""
        scripted_client.script_open(*[OSError("down") for _ in range(5)])
        feed = await start(
            recording_handler,
            None,
            client=scripted_client,
            config=create_fast_retry_config(initial_backoff=0.001, max_backoff=0.004),
            enable_tracing=False,
            enable_metrics=False,
        )
        await wait_until(lambda: recording_handler.batches == [[]])

        status = feed.status()
        assert status.connect_attempts == 6
        assert status.last_backoff_delay == 0.004
        assert status.current_backoff == 0.001
        await feed.stop()

    @pytest.mark.asyncio
    async def test_connect_timeout_is_transient(self, recording_handler):
        """Test an open() exceeding connect_timeout is retried."""

        class SlowFirstOpen(ScriptedFeedClient):
            async def open(self, query, connection):
                if not self.opened:
                    self.opened.append((query, connection))
                    await asyncio.sleep(10)
                return await super().open(query, connection)

        client = SlowFirstOpen()
        feed = await start(
            recording_handler,
            None,
            client=client,
            config=create_fast_retry_config(connect_timeout=0.02),
            enable_tracing=False,
            enable_metrics=False,
        )
        await wait_until(lambda: recording_handler.batches == [[]])
        assert "TimeoutError" in feed.status().last_error
        await feed.stop()


class TestUnexpectedResults:
    """Tests for results of an unrecognized shape."""

    @pytest.mark.asyncio
    async def test_unexpected_open_result_backs_off(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a non-page open() result is treated as a transient failure."""
        scripted_client.script_open("garbage", FeedPage(cursor="c2", batch=["ok"]))
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: recording_handler.batches == [["ok"]])

        assert "UnexpectedResultError" in feed.status().last_error
        await feed.stop()

    @pytest.mark.asyncio
    async def test_unexpected_first_batch_releases_cursor(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a page whose batch is not a sequence is released and retried."""
        scripted_client.script_open(
            FeedPage(cursor="c1", batch="not a batch"),
            FeedPage(cursor="c2", batch=["ok"]),
        )
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: recording_handler.batches == [["ok"]])

        assert scripted_client.closed == ["c1"]
        await feed.stop()

    @pytest.mark.asyncio
    async def test_unexpected_fetch_result_reconnects(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an unrecognized fetch result never reaches on_update."""
        scripted_client.script_open(
            FeedPage(cursor="c1", batch=[]),
            FeedPage(cursor="c2", batch=["ok"]),
        )
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        scripted_client.push({"not": "a batch"})
        await wait_until(lambda: len(recording_handler.batches) == 2)

        assert recording_handler.batches == [[], ["ok"]]
        assert scripted_client.closed == ["c1"]
        assert feed.metrics().fetch_failures == 1
        await feed.stop()


# Termination Tests


class TestConnectionClosed:
    """Tests for out-of-band connection close."""

    @pytest.mark.asyncio
    async def test_closed_during_fetch_stops(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a closed connection stops the changefeed without retrying."""
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        scripted_client.push(ConnectionClosedError("closed by server"))
        signal = await feed.wait(timeout=1.0)

        assert signal.reason == CONNECTION_CLOSED
        assert not signal.crashed
        assert recording_handler.terminated == [(CONNECTION_CLOSED, 0)]
        assert len(scripted_client.opened) == 1
        assert scripted_client.closed == ["cursor-1"]

    @pytest.mark.asyncio
    async def test_closed_during_open_stops(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a closed connection while opening stops the changefeed."""
        scripted_client.script_open(ConnectionClosedError("closed"))
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.wait(timeout=1.0)

        assert signal.reason == CONNECTION_CLOSED
        assert recording_handler.batches == []
        assert recording_handler.terminated == [(CONNECTION_CLOSED, 0)]


class TestCrash:
    """Tests for fatal errors."""

    @pytest.mark.asyncio
    async def test_fatal_query_error_on_open(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a fatal open() error crashes the changefeed."""
        error = FatalQueryError("no such table")
        scripted_client.script_open(error)
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.wait(timeout=1.0)

        assert signal.crashed
        assert signal.error is error
        assert signal.reason is error
        assert recording_handler.terminated == [(error, 0)]
        assert feed.phase is Phase.STOPPED

    @pytest.mark.asyncio
    async def test_fatal_fetch_error(self, recording_handler, scripted_client, start_kwargs):
        """Test a fatal fetch error crashes and releases the cursor."""
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        scripted_client.push(FatalQueryError("query invalidated"))
        signal = await feed.wait(timeout=1.0)

        assert isinstance(signal.error, FatalQueryError)
        assert scripted_client.closed == ["cursor-1"]
        assert len(recording_handler.terminated) == 1

    @pytest.mark.asyncio
    async def test_on_update_exception_crashes(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an exception in on_update crashes the changefeed."""

        def fail(batch, state):
            raise ValueError("bad record")

        recording_handler.update_result = fail
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.wait(timeout=1.0)

        assert isinstance(signal.error, ValueError)
        assert scripted_client.next_calls == 0
        assert scripted_client.closed == ["cursor-1"]

    @pytest.mark.asyncio
    async def test_invalid_directive_crashes(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an invalid on_update directive crashes the changefeed."""
        recording_handler.update_result = lambda batch, state: "oops"
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.wait(timeout=1.0)

        assert isinstance(signal.error, HandlerReturnError)
        assert signal.error.callback == "on_update"


class TestStopFromUpdate:
    """Tests for Stop returned by on_update."""

    @pytest.mark.asyncio
    async def test_stop_prevents_next_fetch(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test Stop from on_update terminates instead of fetching."""
        recording_handler.update_result = lambda batch, state: Stop("enough")
        scripted_client.script_open(FeedPage(cursor="c1", batch=["r1"]))
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.wait(timeout=1.0)

        assert signal.reason == "enough"
        assert not signal.crashed
        assert scripted_client.next_calls == 0
        assert scripted_client.closed == ["c1"]
        assert recording_handler.terminated == [("enough", 0)]

    @pytest.mark.asyncio
    async def test_stop_after_some_batches(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test Stop with a new state is passed to terminate."""

        def stop_on_marker(batch, state):
            if "last" in batch:
                return Stop("done", state=state + 100)
            return Next(state + len(batch))

        recording_handler.update_result = stop_on_marker
        feed = await start(recording_handler, None, **start_kwargs)
        scripted_client.push(["a", "b"])
        scripted_client.push(["last"])
        signal = await feed.wait(timeout=1.0)

        assert signal.reason == "done"
        assert recording_handler.terminated == [("done", 102)]
        assert scripted_client.next_calls == 2


class TestTeardown:
    """Tests for cursor release and terminate on stop."""

    @pytest.mark.asyncio
    async def test_stop_releases_cursor_and_terminates_once(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test stop releases the cursor before terminate runs, once."""
        order: list[str] = []
        original_close = scripted_client.close

        async def close(cursor):
            order.append("close")
            await original_close(cursor)

        scripted_client.close = close
        original_terminate = recording_handler.terminate

        def terminate(reason, state):
            order.append("terminate")
            original_terminate(reason, state)

        recording_handler.terminate = terminate

        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)
        first = await feed.stop()
        second = await feed.stop()

        assert first is second
        assert order == ["close", "terminate"]
        assert recording_handler.terminated == [(NORMAL, 0)]
        assert scripted_client.closed == ["cursor-1"]

    @pytest.mark.asyncio
    async def test_close_failure_does_not_block_stop(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an error releasing the cursor is logged and stop completes."""
        scripted_client.close_error = RuntimeError("close failed")
        feed = await start(recording_handler, None, **start_kwargs)
        await wait_until(lambda: scripted_client.next_calls == 1)

        signal = await feed.stop()
        assert signal.normal
        assert recording_handler.terminated == [(NORMAL, 0)]

    @pytest.mark.asyncio
    async def test_terminate_failure_does_not_block_stop(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an error in terminate does not prevent termination."""
        recording_handler.terminate_error = RuntimeError("cleanup failed")
        feed = await start(recording_handler, None, **start_kwargs)
        signal = await feed.stop()

        assert signal.normal
        assert not feed.alive


# Idle Timeout Tests


class TestIdleTimeout:
    """Tests for idle timeouts requested by directives."""

    @pytest.mark.asyncio
    async def test_timeout_delivered_to_on_info(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test an idle timeout sends "timeout" to on_info."""
        feed = await start(recording_handler, None, **start_kwargs)
        assert await feed.call(("idle", 0.02)) == "ok"

        await wait_until(lambda: recording_handler.infos == ["timeout"])
        await feed.stop()

    @pytest.mark.asyncio
    async def test_any_event_cancels_timeout(
        self, recording_handler, scripted_client, start_kwargs
    ):
        """Test a message arriving before the timeout cancels it."""
        feed = await start(recording_handler, None, **start_kwargs)
        assert await feed.call(("idle", 0.1)) == "ok"
        assert await feed.call("get") == 0

        await asyncio.sleep(0.15)
        assert recording_handler.infos == []
        await feed.stop()


# Status and Tracing Tests


class TestStatus:
    """Tests for status snapshots."""

    @pytest.mark.asyncio
    async def test_status_snapshot(self, recording_handler, scripted_client, start_kwargs):
        """Test status counts batches and records."""
        scripted_client.script_open(FeedPage(cursor="c1", batch=["a", "b"]))
        feed = await start(recording_handler, None, name="people", **start_kwargs)
        scripted_client.push(["c"])
        await wait_until(lambda: len(recording_handler.batches) == 2)

        status = feed.status()
        assert isinstance(status, ChangefeedStatus)
        assert status.name == "people"
        assert status.phase == "streaming"
        assert status.batches_received == 2
        assert status.records_received == 3
        assert status.connect_attempts == 1
        assert status.last_error is None
        assert status.uptime_seconds >= 0

        data = status.to_dict()
        assert data["phase"] == "streaming"
        assert set(data) == {
            "name",
            "phase",
            "batches_received",
            "records_received",
            "connect_attempts",
            "reconnects",
            "current_backoff",
            "last_backoff_delay",
            "last_error",
            "started_at",
            "uptime_seconds",
        }
        await feed.stop()
        assert feed.status().phase == "stopped"


class TestTracing:
    """Tests for spans emitted by the state machine."""

    @pytest.mark.asyncio
    async def test_spans(self, recording_handler, scripted_client, fast_config, mock_tracer):
        """Test connect, update, call and migrate spans are emitted."""
        feed = await start(
            recording_handler,
            None,
            client=scripted_client,
            config=fast_config,
            tracer=mock_tracer,
            enable_metrics=False,
        )
        await wait_until(lambda: scripted_client.next_calls == 1)
        await feed.call("get")
        await feed.migrate(1)
        await feed.stop()

        assert mock_tracer.span_names == [
            "changefeed.connect",
            "changefeed.update",
            "changefeed.call",
            "changefeed.migrate",
        ]
        _, update_attributes = mock_tracer.spans[1]
        assert update_attributes["changefeed.batch.size"] == 0
        assert update_attributes["changefeed.handler"] == "RecordingHandler"
