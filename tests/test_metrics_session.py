"""
Tests for the sampling session engine.

This test module validates:
- The idle → running → completed/failed lifecycle
- Tick scheduling, elapsed values and progress reporting
- Transient tick failures and the consecutive-failure cutoff
- Idempotent stop and discarding of in-flight ticks
- Persistence on completion and persistence failures
- The fatal path and event delivery to listeners and subscriptions
"""

from __future__ import annotations

import asyncio
import json
import math
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeMetricSource

from sysmon.errors import (
    ConfigurationError,
    ConflictError,
    FatalEngineError,
    PersistenceError,
    TransientSampleError,
)
from sysmon.metrics.events import SampleProduced, SessionCompleted, SessionError
from sysmon.metrics.models import SessionState
from sysmon.metrics.session import SamplingSession, _elapsed_precision
from sysmon.metrics.storage import SessionStore

WAIT_TIMEOUT = 5.0


class FailingStore:
    """Store whose writes always fail."""

    def __init__(self) -> None:
        self.calls = 0

    async def save(self, record):  # noqa: ANN001, ANN201
        self.calls += 1
        raise PersistenceError("disk full", details={"session_id": record.session_id})


async def run_to_completion(session: SamplingSession, duration: float, interval: float):  # noqa: ANN201
    """Start a session, collect its events and wait for the terminal state."""
    events = []
    session.add_listener(events.append)
    await session.start(duration, interval)
    record = await asyncio.wait_for(session.wait_closed(), timeout=WAIT_TIMEOUT)
    return record, events


# =============================================================================
# Tests for start()
# =============================================================================


class TestSamplingSessionStart:
    """Tests for starting a session."""

    def test_new_session_is_idle(self, fake_source: FakeMetricSource) -> None:
        """Test that a new session starts out idle with a generated id."""
        session = SamplingSession(fake_source)

        assert session.state == SessionState.IDLE
        assert session.session_id.startswith("session-")
        assert session.record.measurements == []
        assert session.get_statistics() is None

    def test_explicit_session_id(self, fake_source: FakeMetricSource) -> None:
        """Test that an explicit session id is used."""
        session = SamplingSession(fake_source, session_id="nightly-run")
        assert session.session_id == "nightly-run"

    @pytest.mark.asyncio
    async def test_start_enters_running(self, fake_source: FakeMetricSource) -> None:
        """Test that start returns immediately in the running state."""
        session = SamplingSession(fake_source)

        status = await session.start(duration_seconds=10, interval_seconds=1)

        try:
            assert status.state == SessionState.RUNNING
            assert session.is_running
            assert session.record.start_time is not None
            assert session.record.end_time is None
            assert session.record.system_info is not None
            assert session.record.duration_seconds == 10.0
            assert session.record.interval_seconds == 1.0
        finally:
            await session.stop()

    @pytest.mark.asyncio
    async def test_double_start_raises_conflict(self, fake_source: FakeMetricSource) -> None:
        """Test that starting a running session raises ConflictError."""
        session = SamplingSession(fake_source)
        await session.start(10, 0.05)

        try:
            await asyncio.sleep(0.12)
            count_before = len(session.record.measurements)

            with pytest.raises(ConflictError) as exc_info:
                await session.start(10, 0.05)

            assert "already running" in str(exc_info.value)
            assert session.state == SessionState.RUNNING
            assert len(session.record.measurements) >= count_before
        finally:
            record = await session.stop()

        assert record.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_start_after_completion_raises_conflict(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that a finished session cannot be restarted."""
        session = SamplingSession(fake_source)
        await session.start(10, 1)
        await session.stop()

        with pytest.raises(ConflictError):
            await session.start(10, 1)
        assert session.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("duration", "interval"),
        [
            (0, 1),
            (-5, 1),
            (10, 0),
            (10, -0.5),
            (math.nan, 1),
            (10, math.inf),
            (True, 1),
            (10, False),
            ("10", 1),
            (None, 1),
        ],
    )
    async def test_invalid_numbers_raise_configuration_error(
        self, fake_source: FakeMetricSource, duration: object, interval: object
    ) -> None:
        """Test that invalid duration or interval is rejected and state stays idle."""
        session = SamplingSession(fake_source)

        with pytest.raises(ConfigurationError) as exc_info:
            await session.start(duration, interval)  # type: ignore[arg-type]

        assert exc_info.value.error_code == "invalid_argument"
        assert session.state == SessionState.IDLE
        assert fake_source.system_info_calls == 0

    @pytest.mark.asyncio
    async def test_system_info_failure_keeps_idle(self) -> None:
        """Test that a failing system info query leaves the session idle."""
        source = FakeMetricSource(system_info_error=OSError("no /proc"))
        session = SamplingSession(source)

        with pytest.raises(TransientSampleError) as exc_info:
            await session.start(10, 1)

        assert "no /proc" in exc_info.value.message
        assert session.state == SessionState.IDLE
        assert source.calls == 0

        # A later attempt can still succeed
        source.system_info_error = None
        await session.start(10, 1)
        await session.stop()
        assert session.state == SessionState.COMPLETED

    def test_invalid_failure_cutoff(self, fake_source: FakeMetricSource) -> None:
        """Test that a non-positive failure cutoff is rejected."""
        with pytest.raises(ConfigurationError):
            SamplingSession(fake_source, max_consecutive_failures=0)


# =============================================================================
# Tests for ticks
# =============================================================================


class TestSamplingSessionTicks:
    """Tests for the tick schedule and measurements."""

    @pytest.mark.asyncio
    async def test_elapsed_values_follow_interval(self, fake_source: FakeMetricSource) -> None:
        """Test that elapsed values are increasing multiples of the interval."""
        session = SamplingSession(fake_source)

        record, _ = await run_to_completion(session, 0.6, 0.2)

        elapsed = [m.elapsed for m in record.measurements]
        assert elapsed == pytest.approx([0.0, 0.2, 0.4])
        assert all(a < b for a, b in zip(elapsed, elapsed[1:]))
        assert all(e < 0.6 for e in elapsed)
        for e in elapsed:
            ratio = e / 0.2
            assert abs(ratio - round(ratio)) < 1e-6

    @pytest.mark.asyncio
    async def test_sample_events_report_progress(self, fake_source: FakeMetricSource) -> None:
        """Test that SampleProduced events carry clamped, increasing progress."""
        session = SamplingSession(fake_source)

        _, events = await run_to_completion(session, 0.6, 0.2)

        samples = [e for e in events if isinstance(e, SampleProduced)]
        assert len(samples) == 3
        progress = [e.progress_percent for e in samples]
        assert progress == pytest.approx([33.33, 66.67, 100.0], abs=0.01)
        assert all(0 <= p <= 100 for p in progress)
        assert [e.elapsed_seconds for e in samples] == pytest.approx([0.2, 0.4, 0.6])
        assert all(e.total_duration == 0.6 for e in samples)
        assert samples[0].measurement is session.record.measurements[0]

    @pytest.mark.asyncio
    async def test_first_rate_is_zero_then_delta(self, fake_source: FakeMetricSource) -> None:
        """Test rates derived from network counters."""
        session = SamplingSession(fake_source)

        record, _ = await run_to_completion(session, 0.6, 0.2)

        rx = [m.network.rx_kbps for m in record.measurements]
        # 2048 bytes per 0.2s tick = 10240 B/s = 10 KB/s
        assert rx == [0.0, 10.0, 10.0]
        tx = [m.network.tx_kbps for m in record.measurements]
        assert tx == [0.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_failed_tick_is_skipped(self) -> None:
        """Test that one failed tick drops one measurement and publishes one error."""
        source = FakeMetricSource(fail_on={2})
        session = SamplingSession(source)

        record, events = await run_to_completion(session, 0.6, 0.2)

        assert record.state == SessionState.COMPLETED
        assert [m.elapsed for m in record.measurements] == pytest.approx([0.0, 0.4])
        errors = [e for e in events if isinstance(e, SessionError)]
        assert len(errors) == 1
        assert not errors[0].fatal
        assert isinstance(errors[0].cause, TransientSampleError)
        assert isinstance(errors[0].cause.__cause__, OSError)
        assert session.get_status().error_count == 1
        assert session.elapsed_seconds == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_rate_after_skipped_tick_spans_both_intervals(self) -> None:
        """Test that the rate after a skipped tick is not inflated."""
        source = FakeMetricSource(fail_on={2})
        session = SamplingSession(source)

        record, _ = await run_to_completion(session, 0.6, 0.2)

        # Counter moved 4096 bytes over two 0.2s intervals
        assert record.measurements[1].network.rx_kbps == 10.0

    @pytest.mark.asyncio
    async def test_malformed_snapshot_is_transient(self) -> None:
        """Test that malformed data is treated as a failed tick."""
        from conftest import build_snapshot

        def factory(call: int):  # noqa: ANN202
            if call == 1:
                return build_snapshot(memory_total=0)
            return build_snapshot(cpu_percent=float(call))

        source = FakeMetricSource(snapshot_factory=factory)
        session = SamplingSession(source)

        record, events = await run_to_completion(session, 0.4, 0.2)

        assert len(record.measurements) == 1
        assert record.measurements[0].elapsed == pytest.approx(0.2)
        errors = [e for e in events if isinstance(e, SessionError)]
        assert len(errors) == 1
        assert "memory_total" in errors[0].cause.message

    @pytest.mark.asyncio
    async def test_rate_after_malformed_snapshot_uses_last_good_baseline(self) -> None:
        """Test that a rejected snapshot does not move the rate baseline."""
        from conftest import build_snapshot

        def factory(call: int):  # noqa: ANN202
            if call == 2:
                return build_snapshot(memory_total=0, net_rx_bytes=call * 2048)
            return build_snapshot(net_rx_bytes=call * 2048)

        source = FakeMetricSource(snapshot_factory=factory)
        session = SamplingSession(source)

        record, _ = await run_to_completion(session, 0.6, 0.2)

        rx = [(m.elapsed, m.network.rx_kbps) for m in record.measurements]
        # 4096 bytes over two 0.2s intervals = 10 KB/s
        assert rx == [(0.0, 0.0), (0.4, 10.0)]

    @pytest.mark.asyncio
    async def test_sub_microsecond_interval_completes(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that tiny intervals keep elapsed values strictly increasing."""
        session = SamplingSession(fake_source)

        record, events = await run_to_completion(session, 1e-6, 1e-7)

        assert record.state == SessionState.COMPLETED
        elapsed = [m.elapsed for m in record.measurements]
        assert elapsed == sorted(set(elapsed))
        assert not any(isinstance(e, SessionError) and e.fatal for e in events)

    def test_elapsed_precision_keeps_offsets_distinct(self) -> None:
        """Test that rounded consecutive offsets never collide."""
        for interval in (1.0, 0.1, 1e-4, 1e-7, 3e-9):
            digits = _elapsed_precision(interval)
            offsets = [round(k * interval, digits) for k in range(50)]
            assert offsets == sorted(set(offsets))
        assert _elapsed_precision(2.0) == 6

    @pytest.mark.asyncio
    async def test_interval_longer_than_duration(self, fake_source: FakeMetricSource) -> None:
        """Test that an interval above the duration yields one sample."""
        session = SamplingSession(fake_source)

        record, _ = await run_to_completion(session, 0.1, 1.0)

        assert record.state == SessionState.COMPLETED
        assert len(record.measurements) == 1
        assert record.measurements[0].elapsed == 0.0

    @pytest.mark.asyncio
    async def test_failures_never_stop_session_by_default(self) -> None:
        """Test that a session keeps running while every tick fails."""
        source = FakeMetricSource(fail_always=True)
        session = SamplingSession(source)

        record, events = await run_to_completion(session, 0.5, 0.05)

        assert record.state == SessionState.COMPLETED
        assert record.measurements == []
        assert session.get_statistics() is None
        assert len([e for e in events if isinstance(e, SessionError)]) >= 5
        assert isinstance(events[-1], SessionCompleted)

    @pytest.mark.asyncio
    async def test_consecutive_failure_cutoff_completes(self) -> None:
        """Test that the failure cutoff completes the session early."""
        source = FakeMetricSource(fail_always=True)
        session = SamplingSession(source, max_consecutive_failures=3)

        record, events = await run_to_completion(session, 30, 0.02)

        assert record.state == SessionState.COMPLETED
        assert source.calls == 3
        errors = [e for e in events if isinstance(e, SessionError)]
        assert len(errors) == 3
        assert isinstance(events[-1], SessionCompleted)
        assert record.elapsed_wall_seconds is not None
        assert record.elapsed_wall_seconds < 5

    @pytest.mark.asyncio
    async def test_sessions_keep_independent_rates(self) -> None:
        """Test that concurrent sessions do not share rate baselines."""
        fast = SamplingSession(FakeMetricSource(rx_step=4096))
        slow = SamplingSession(FakeMetricSource(rx_step=1024))

        (fast_record, _), (slow_record, _) = await asyncio.gather(
            run_to_completion(fast, 0.6, 0.2),
            run_to_completion(slow, 0.6, 0.2),
        )

        assert [m.network.rx_kbps for m in fast_record.measurements] == [0.0, 20.0, 20.0]
        assert [m.network.rx_kbps for m in slow_record.measurements] == [0.0, 5.0, 5.0]


# =============================================================================
# Tests for stop()
# =============================================================================


class TestSamplingSessionStop:
    """Tests for stopping a session."""

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, fake_source: FakeMetricSource) -> None:
        """Test that stop before start changes nothing."""
        session = SamplingSession(fake_source)

        record = await session.stop()

        assert record.state == SessionState.IDLE
        assert not session.events.closed

    @pytest.mark.asyncio
    async def test_stop_early_completes(
        self, fake_source: FakeMetricSource, store: SessionStore
    ) -> None:
        """Test that stop ends a session before its deadline."""
        session = SamplingSession(fake_source, store)
        await session.start(60, 0.05)
        await asyncio.sleep(0.2)

        record = await session.stop()

        assert record.state == SessionState.COMPLETED
        assert record.end_time is not None
        assert record.frozen
        assert 1 <= len(record.measurements) <= 6
        assert session.snapshot_path == store.path_for(session.session_id)
        assert session.snapshot_path.exists()

    @pytest.mark.asyncio
    async def test_double_stop_is_idempotent(
        self, fake_source: FakeMetricSource, store: SessionStore
    ) -> None:
        """Test that a second stop emits nothing and persists nothing."""
        session = SamplingSession(fake_source, store)
        events = []
        session.add_listener(events.append)
        await session.start(60, 0.05)
        await asyncio.sleep(0.1)

        first = await session.stop()
        end_time = first.end_time
        count = len(first.measurements)
        second = await session.stop()

        assert second is first
        assert second.end_time == end_time
        assert len(second.measurements) == count
        assert len([e for e in events if isinstance(e, SessionCompleted)]) == 1

    @pytest.mark.asyncio
    async def test_concurrent_stops_finalize_once(
        self, fake_source: FakeMetricSource, store: SessionStore
    ) -> None:
        """Test that concurrent stop calls complete the session once."""
        session = SamplingSession(fake_source, store)
        events = []
        session.add_listener(events.append)
        await session.start(60, 0.05)

        await asyncio.gather(session.stop(), session.stop(), session.stop())
        await asyncio.wait_for(session.wait_closed(), timeout=WAIT_TIMEOUT)

        assert session.state == SessionState.COMPLETED
        assert len([e for e in events if isinstance(e, SessionCompleted)]) == 1

    @pytest.mark.asyncio
    async def test_in_flight_tick_is_discarded(self) -> None:
        """Test that a tick still running at stop contributes nothing."""
        source = FakeMetricSource(delay=0.5)
        session = SamplingSession(source)
        events = []
        session.add_listener(events.append)
        await session.start(60, 1)
        await asyncio.sleep(0.1)

        record = await session.stop()
        await asyncio.sleep(0.6)

        assert source.calls == 1
        assert record.measurements == []
        assert not [e for e in events if isinstance(e, SampleProduced)]

    @pytest.mark.asyncio
    async def test_measurements_frozen_after_stop(self, fake_source: FakeMetricSource) -> None:
        """Test that nothing can be appended once completed."""
        session = SamplingSession(fake_source)
        await session.start(60, 0.05)
        await asyncio.sleep(0.1)
        record = await session.stop()

        with pytest.raises(FatalEngineError):
            record.append(record.measurements[-1])

    @pytest.mark.asyncio
    async def test_persistence_failure_still_completes(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that a failed save is reported without undoing completion."""
        failing = FailingStore()
        session = SamplingSession(fake_source, failing)  # type: ignore[arg-type]

        record, events = await run_to_completion(session, 0.2, 0.1)

        assert record.state == SessionState.COMPLETED
        assert failing.calls == 1
        completed = events[-1]
        assert isinstance(completed, SessionCompleted)
        assert isinstance(completed.persistence_error, PersistenceError)
        assert session.persistence_error is completed.persistence_error
        assert session.snapshot_path is None

    @pytest.mark.asyncio
    async def test_unexpected_store_error_still_closes(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that a store raising a non-domain error still completes the session."""

        class BrokenStore:
            async def save(self, record):  # noqa: ANN001, ANN201
                raise RuntimeError("executor shut down")

        session = SamplingSession(fake_source, BrokenStore())  # type: ignore[arg-type]

        record, events = await run_to_completion(session, 0.2, 0.1)

        assert record.state == SessionState.COMPLETED
        assert isinstance(events[-1], SessionCompleted)
        error = session.persistence_error
        assert isinstance(error, PersistenceError)
        assert "executor shut down" in error.message
        assert isinstance(error.__cause__, RuntimeError)
        assert session.events.closed


# =============================================================================
# Tests for the fatal path
# =============================================================================


class TestSamplingSessionFatal:
    """Tests for internal failures of the engine."""

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_session(
        self, fake_source: FakeMetricSource, store: SessionStore
    ) -> None:
        """Test that an unexpected exception forces the failed state."""
        session = SamplingSession(fake_source, store)

        with patch(
            "sysmon.metrics.session.build_measurement",
            side_effect=RuntimeError("boom"),
        ):
            record, events = await run_to_completion(session, 10, 0.05)

        assert record.state == SessionState.FAILED
        assert record.end_time is not None
        assert record.frozen
        assert session.events.closed
        fatal = events[-1]
        assert isinstance(fatal, SessionError)
        assert fatal.fatal
        assert isinstance(fatal.cause, FatalEngineError)
        assert fatal.cause.error_code == "internal"
        assert not await store.exists(session.session_id)

    @pytest.mark.asyncio
    async def test_stop_after_failure_is_noop(self, fake_source: FakeMetricSource) -> None:
        """Test that stop leaves a failed session failed."""
        session = SamplingSession(fake_source)

        with patch(
            "sysmon.metrics.session.build_measurement",
            side_effect=RuntimeError("boom"),
        ):
            await run_to_completion(session, 10, 0.05)

        record = await session.stop()
        assert record.state == SessionState.FAILED


# =============================================================================
# Tests for events
# =============================================================================


class TestSamplingSessionEvents:
    """Tests for event delivery."""

    @pytest.mark.asyncio
    async def test_subscription_ends_after_completion(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that an async subscription yields all events and then ends."""
        session = SamplingSession(fake_source)
        received = []

        async with session.subscribe() as events:
            await session.start(0.3, 0.1)
            async for event in events:
                received.append(event)

        assert len([e for e in received if isinstance(e, SampleProduced)]) == 3
        assert isinstance(received[-1], SessionCompleted)
        assert received[-1].session is session.record

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_session(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that a raising listener neither stops sampling nor other listeners."""
        session = SamplingSession(fake_source)

        def broken(event: object) -> None:
            raise RuntimeError("listener bug")

        session.add_listener(broken)
        record, events = await run_to_completion(session, 0.3, 0.1)

        assert record.state == SessionState.COMPLETED
        assert len(record.measurements) == 3
        assert len([e for e in events if isinstance(e, SampleProduced)]) == 3

    @pytest.mark.asyncio
    async def test_listeners_detached_after_completion(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that no observer outlives the session."""
        session = SamplingSession(fake_source)
        await run_to_completion(session, 0.2, 0.1)

        assert session.events.closed
        assert session.events.observer_count == 0

    @pytest.mark.asyncio
    async def test_removed_listener_receives_nothing(
        self, fake_source: FakeMetricSource
    ) -> None:
        """Test that a detached listener gets no further events."""
        session = SamplingSession(fake_source)
        received = []
        remove = session.add_listener(received.append)
        remove()

        await run_to_completion(session, 0.2, 0.1)

        assert received == []


# =============================================================================
# End-to-end
# =============================================================================


class TestSamplingSessionEndToEnd:
    """Full-length session run against the real clock."""

    @pytest.mark.asyncio
    async def test_three_second_session(
        self, fake_source: FakeMetricSource, store: SessionStore
    ) -> None:
        """Test a 3 second session sampled every second."""
        session = SamplingSession(fake_source, store)

        record, events = await run_to_completion(session, 3, 1)

        assert record.state == SessionState.COMPLETED
        assert len(record.measurements) == 3
        assert [m.elapsed for m in record.measurements] == [0.0, 1.0, 2.0]
        assert isinstance(events[-1], SessionCompleted)
        assert events[-1].persistence_error is None
        assert record.elapsed_wall_seconds == pytest.approx(3.0, abs=0.5)

        path: Path = store.path_for(session.session_id)
        data = json.loads(path.read_text())
        assert data["session_id"] == session.session_id
        assert data["state"] == "completed"
        assert len(data["measurements"]) == 3

        stats = session.get_statistics()
        assert stats is not None
        assert stats.sample_count == 3
        assert stats.network_rx_kbps.max == 2.0
