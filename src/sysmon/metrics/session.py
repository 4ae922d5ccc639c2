"""
Sampling session engine.

This module implements the SamplingSession class that:
- Manages the lifecycle of one bounded monitoring run (idle → running →
  completed, or running → failed)
- Samples a MetricSource on a fixed cadence and converts counters to rates
- Accumulates measurements and publishes lifecycle events
- Terminates on a wall-clock deadline and persists the finished session

Scheduling model:
    Ticks run in one background task at nominal offsets ``k * interval``
    (k = 0, 1, ...) while the offset is below the duration, so ticks are
    serialized and elapsed values strictly increase. A second task fires at
    ``duration`` and stops the session, which bounds the session on wall-clock
    time even when ticks fail or overrun. Stopping cancels both tasks; a tick
    still in flight at that point is discarded.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sysmon.errors import (
    ConfigurationError,
    ConflictError,
    FatalEngineError,
    MonitorError,
    PersistenceError,
    TransientSampleError,
)
from sysmon.logging import get_logger
from sysmon.metrics.events import (
    EventChannel,
    Listener,
    SampleProduced,
    SessionCompleted,
    SessionError,
    Subscription,
)
from sysmon.metrics.models import (
    SessionRecord,
    SessionState,
    build_measurement,
    new_session_id,
)
from sysmon.metrics.rate import RateCalculator
from sysmon.metrics.statistics import SessionStatistics, compute_statistics

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sysmon.metrics.source import MetricSource
    from sysmon.metrics.storage import SessionStore

logger = get_logger(__name__)

# Tolerance when comparing tick offsets with the duration
_OFFSET_EPSILON = 1e-9

# Decimal places kept for nominal elapsed values of intervals of 1s or more
_ELAPSED_PRECISION = 6


def _elapsed_precision(interval: float) -> int:
    """Return the decimal places that keep consecutive tick offsets distinct."""
    return _ELAPSED_PRECISION + max(math.ceil(-math.log10(interval)), 0)


def _validate_positive(name: str, value: Any) -> float:
    """
    Validate a duration or interval.

    Raises:
        ConfigurationError: If value is not a positive finite number.
    """
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise ConfigurationError(
            f"{name} must be a positive number",
            details={name: value},
        )
    return float(value)


@dataclass
class SessionStatus:
    """
    Point-in-time view of a session.

    Attributes:
        session_id: Session identifier.
        state: Lifecycle state.
        duration_seconds: Configured duration.
        interval_seconds: Configured interval.
        elapsed_seconds: Session time covered by the ticks so far.
        progress_percent: elapsed_seconds / duration_seconds in percent.
        sample_count: Measurements recorded.
        error_count: Ticks that failed.
        last_error: Message of the most recent tick failure.
        started_at: When the session entered running.
        ended_at: When the session reached a terminal state.
    """

    session_id: str
    state: SessionState
    duration_seconds: float
    interval_seconds: float
    elapsed_seconds: float
    progress_percent: float
    sample_count: int
    error_count: int
    last_error: str | None
    started_at: datetime | None
    ended_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "duration_seconds": self.duration_seconds,
            "interval_seconds": self.interval_seconds,
            "elapsed_seconds": self.elapsed_seconds,
            "progress_percent": self.progress_percent,
            "sample_count": self.sample_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class SamplingSession:
    """
    One bounded, timer-driven monitoring run.

    A session is single-use: once completed or failed it cannot be restarted;
    create a new instance for the next run. Each instance owns its own rate
    baseline and event channel.

    Example:
        >>> session = SamplingSession(PsutilMetricSource(), SessionStore("./data"))
        >>> async with session.subscribe() as events:
        ...     await session.start(duration_seconds=60, interval_seconds=1)
        ...     async for event in events:
        ...         print(event)
        >>> stats = session.get_statistics()
    """

    def __init__(
        self,
        source: MetricSource,
        store: SessionStore | None = None,
        *,
        session_id: str | None = None,
        max_consecutive_failures: int | None = None,
    ) -> None:
        """
        Initialize the SamplingSession.

        Args:
            source: Provider of host readings.
            store: Where the finished session is persisted (None: not persisted).
            session_id: Explicit identifier (generated when omitted).
            max_consecutive_failures: Stop the session after this many failed
                ticks in a row; None keeps sampling regardless of failures.
        """
        if max_consecutive_failures is not None and max_consecutive_failures < 1:
            raise ConfigurationError(
                "max_consecutive_failures must be at least 1",
                details={"max_consecutive_failures": max_consecutive_failures},
            )
        self._source = source
        self._store = store
        self._max_consecutive_failures = max_consecutive_failures
        self._record = SessionRecord(
            session_id=session_id or new_session_id(),
            duration_seconds=0.0,
            interval_seconds=0.0,
        )
        self._channel = EventChannel()
        self._rates: RateCalculator | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._deadline_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()
        self._starting = False
        self._finalizing = False
        self._started_at = 0.0
        self._elapsed = 0.0
        self._last_sampled_tick: int | None = None
        self._error_count = 0
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self.snapshot_path: Path | None = None
        self.persistence_error: PersistenceError | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._record.session_id

    @property
    def state(self) -> SessionState:
        return self._record.state

    @property
    def is_running(self) -> bool:
        """Check if the session is sampling."""
        return self._record.state is SessionState.RUNNING

    @property
    def record(self) -> SessionRecord:
        """The session record (frozen once terminal)."""
        return self._record

    @property
    def events(self) -> EventChannel:
        """The channel lifecycle events are published on."""
        return self._channel

    @property
    def elapsed_seconds(self) -> float:
        return self._elapsed

    @property
    def progress_percent(self) -> float:
        """Elapsed session time as a percentage of the duration, in [0, 100]."""
        duration = self._record.duration_seconds
        if duration <= 0:
            return 0.0
        return round(min(max(self._elapsed / duration * 100, 0.0), 100.0), 2)

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        """Subscribe to this session's events (ends after the terminal event)."""
        if maxsize is None:
            return self._channel.subscribe()
        return self._channel.subscribe(maxsize)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Attach a synchronous event listener; returns its detach function."""
        return self._channel.add_listener(listener)

    def get_status(self) -> SessionStatus:
        """Return a point-in-time view of the session."""
        return SessionStatus(
            session_id=self.session_id,
            state=self.state,
            duration_seconds=self._record.duration_seconds,
            interval_seconds=self._record.interval_seconds,
            elapsed_seconds=self._elapsed,
            progress_percent=self.progress_percent,
            sample_count=len(self._record.measurements),
            error_count=self._error_count,
            last_error=self._last_error,
            started_at=self._record.start_time,
            ended_at=self._record.end_time,
        )

    def get_statistics(self) -> SessionStatistics | None:
        """
        Compute statistics over the measurements recorded so far.

        Returns:
            SessionStatistics, or None when nothing has been recorded.
        """
        return compute_statistics(self._record.measurements)

    async def wait_closed(self) -> SessionRecord:
        """Wait until the session reaches a terminal state."""
        await self._closed.wait()
        return self._record

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(
        self,
        duration_seconds: float,
        interval_seconds: float,
    ) -> SessionStatus:
        """
        Start sampling.

        Captures the system information, then schedules the ticks and the
        completion deadline and returns without waiting for either.

        Args:
            duration_seconds: Wall-clock length of the session.
            interval_seconds: Time between two ticks.

        Returns:
            SessionStatus after starting.

        Raises:
            ConflictError: If the session is not idle.
            ConfigurationError: If duration or interval is not a positive number.
            TransientSampleError: If the system information cannot be read.
        """
        if self.state is not SessionState.IDLE or self._starting:
            raise ConflictError(
                "Monitoring session is already running"
                if self.state is SessionState.RUNNING or self._starting
                else f"Monitoring session already {self.state.value}",
                details={"session_id": self.session_id, "state": self.state.value},
            )

        duration = _validate_positive("duration_seconds", duration_seconds)
        interval = _validate_positive("interval_seconds", interval_seconds)
        if interval > duration:
            logger.warning(
                "Sampling interval exceeds session duration; at most one sample will be taken",
                extra={
                    "session_id": self.session_id,
                    "duration_seconds": duration,
                    "interval_seconds": interval,
                },
            )

        self._starting = True
        try:
            system_info = await self._source.system_info()
        except MonitorError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read system information",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            raise TransientSampleError(
                f"Failed to read system information: {e}",
                details={"session_id": self.session_id},
            ) from e
        finally:
            self._starting = False

        self._rates = RateCalculator(interval)
        self._record.duration_seconds = duration
        self._record.interval_seconds = interval
        self._record.system_info = system_info
        self._record.start_time = datetime.now(UTC)
        self._record.state = SessionState.RUNNING
        self._started_at = asyncio.get_running_loop().time()

        self._tick_task = asyncio.create_task(
            self._run_ticks(), name=f"{self.session_id}-ticks"
        )
        self._deadline_task = asyncio.create_task(
            self._run_deadline(), name=f"{self.session_id}-deadline"
        )

        logger.info(
            "Sampling session started",
            extra={
                "session_id": self.session_id,
                "duration_seconds": duration,
                "interval_seconds": interval,
            },
        )
        return self.get_status()

    async def stop(self) -> SessionRecord:
        """
        Stop sampling and complete the session.

        Idempotent: returns the record unchanged unless the session is
        running and not already being finalized. A persistence failure is
        reported on the SessionCompleted event and in ``persistence_error``;
        it does not undo the completed state.

        Returns:
            The (frozen, once completed) session record.
        """
        if self.state is not SessionState.RUNNING or self._finalizing:
            return self._record

        self._finalizing = True
        await self._cancel_timers()

        self._record.end_time = datetime.now(UTC)
        self._record.state = SessionState.COMPLETED
        self._record.freeze()

        logger.info(
            "Sampling session completed",
            extra={
                "session_id": self.session_id,
                "measurements": len(self._record.measurements),
                "failed_ticks": self._error_count,
            },
        )

        try:
            if self._store is not None:
                await self._persist()
        finally:
            self._channel.publish(
                SessionCompleted(
                    session=self._record,
                    persistence_error=self.persistence_error,
                )
            )
            self._close()
        return self._record

    async def _persist(self) -> None:
        """Save the completed record, keeping any failure in persistence_error."""
        try:
            self.snapshot_path = await self._store.save(self._record)
        except PersistenceError as e:
            self.persistence_error = e
        except Exception as e:
            message = e.message if isinstance(e, MonitorError) else str(e)
            details = e.details if isinstance(e, MonitorError) else {}
            self.persistence_error = PersistenceError(
                f"Failed to save session snapshot: {message}",
                details={"session_id": self.session_id, **details},
            )
            self.persistence_error.__cause__ = e
        if self.persistence_error is not None:
            logger.error(
                "Session completed but snapshot was not persisted",
                extra={
                    "session_id": self.session_id,
                    "error": self.persistence_error.message,
                },
            )

    async def _fail(self, error: FatalEngineError) -> None:
        """Force the session into the failed state and surface the error."""
        if self.state is not SessionState.RUNNING or self._finalizing:
            logger.error(
                "Fatal engine error outside a running session",
                extra={"session_id": self.session_id, "error": error.message},
            )
            return

        self._finalizing = True
        await self._cancel_timers()

        self._record.end_time = datetime.now(UTC)
        self._record.state = SessionState.FAILED
        self._record.freeze()

        logger.error(
            "Sampling session failed",
            extra={
                "session_id": self.session_id,
                "error": error.message,
                "details": error.details,
            },
        )
        self._channel.publish(
            SessionError(session_id=self.session_id, cause=error, fatal=True)
        )
        self._close()

    def _close(self) -> None:
        self._channel.close()
        self._closed.set()

    async def _cancel_timers(self) -> None:
        """Cancel the tick and deadline tasks, except the one running this code."""
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._tick_task, self._deadline_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def _run_deadline(self) -> None:
        """Stop the session once the duration has passed."""
        loop = asyncio.get_running_loop()
        delay = self._started_at + self._record.duration_seconds - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        logger.debug("Session deadline reached", extra={"session_id": self.session_id})
        await self.stop()

    async def _run_ticks(self) -> None:
        """Run ticks at their nominal offsets until the duration is covered."""
        loop = asyncio.get_running_loop()
        duration = self._record.duration_seconds
        interval = self._record.interval_seconds
        tick_index = 0

        try:
            while not self._finalizing:
                offset = tick_index * interval
                if offset >= duration - _OFFSET_EPSILON:
                    break
                delay = self._started_at + offset - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                if self._finalizing:
                    break

                await self._tick(tick_index)
                tick_index += 1

                if (
                    self._max_consecutive_failures is not None
                    and self._consecutive_failures >= self._max_consecutive_failures
                ):
                    logger.warning(
                        "Too many consecutive sampling failures, stopping session",
                        extra={
                            "session_id": self.session_id,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self.stop()
                    return
        except FatalEngineError as e:
            await self._fail(e)
        except Exception as e:
            logger.exception(
                "Unexpected error in sampling loop",
                extra={"session_id": self.session_id},
            )
            error = FatalEngineError(
                f"Unexpected error in sampling loop: {e}",
                details={"session_id": self.session_id},
            )
            error.__cause__ = e
            await self._fail(error)

    async def _tick(self, tick_index: int) -> None:
        """
        Take one sample.

        A failed sample publishes a TransientSampleError and is skipped; the
        elapsed counter advances either way.

        Raises:
            FatalEngineError: If the measurement cannot be appended.
        """
        interval = self._record.interval_seconds
        digits = _elapsed_precision(interval)
        elapsed = round(tick_index * interval, digits)
        next_elapsed = round((tick_index + 1) * interval, digits)

        try:
            snapshot = await self._source.snapshot()
        except Exception as e:
            self._elapsed = next_elapsed
            self._record_failure(e, elapsed)
            return

        if self._finalizing or self.state is not SessionState.RUNNING:
            logger.debug(
                "Discarding sample that completed after stop",
                extra={"session_id": self.session_id, "elapsed": elapsed},
            )
            return

        if self._rates is None:
            raise FatalEngineError(
                "Tick ran before the session was started",
                details={"session_id": self.session_id},
            )

        try:
            skipped = (
                1
                if self._last_sampled_tick is None
                else tick_index - self._last_sampled_tick
            )
            counters = snapshot.counters()
            rates = self._rates.compute(counters, intervals=skipped)
            measurement = build_measurement(
                snapshot,
                rates,
                elapsed=elapsed,
                timestamp=datetime.now(UTC),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self._elapsed = next_elapsed
            self._record_failure(e, elapsed)
            return

        self._record.append(measurement)
        self._rates.commit(counters)
        self._last_sampled_tick = tick_index
        self._elapsed = next_elapsed
        self._consecutive_failures = 0

        self._channel.publish(
            SampleProduced(
                session_id=self.session_id,
                measurement=measurement,
                progress_percent=self.progress_percent,
                elapsed_seconds=self._elapsed,
                total_duration=self._record.duration_seconds,
            )
        )

    def _record_failure(self, error: Exception, elapsed: float) -> None:
        """Count a failed tick and publish it as a transient error."""
        if isinstance(error, TransientSampleError):
            cause = error
        else:
            cause = TransientSampleError(
                f"Sampling failed: {error}",
                details={
                    "session_id": self.session_id,
                    "elapsed": elapsed,
                    "exception": type(error).__name__,
                },
            )
            cause.__cause__ = error

        self._error_count += 1
        self._consecutive_failures += 1
        self._last_error = cause.message

        logger.warning(
            "Sample skipped",
            extra={
                "session_id": self.session_id,
                "elapsed": elapsed,
                "error": cause.message,
            },
        )
        self._channel.publish(SessionError(session_id=self.session_id, cause=cause))
