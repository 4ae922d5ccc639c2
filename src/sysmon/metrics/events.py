"""
Session lifecycle events and their delivery channel.

A SamplingSession publishes three kinds of events:
- SampleProduced: a measurement was appended
- SessionCompleted: the session finished (terminal)
- SessionError: a tick failed, or the engine hit a fatal inconsistency

Observers attach to an EventChannel either as synchronous listeners or as
async subscriptions. Every observer receives each published event at most
once. Once the channel is closed (after the terminal event) listeners are
detached and subscriptions end, so nothing outlives the session.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sysmon.logging import get_logger

if TYPE_CHECKING:
    from sysmon.errors import MonitorError, PersistenceError
    from sysmon.metrics.models import Measurement, SessionRecord

logger = get_logger(__name__)

# Default bound on undelivered events per subscription
DEFAULT_SUBSCRIPTION_QUEUE_SIZE = 1024


@dataclass(frozen=True)
class SampleProduced:
    """
    A measurement was appended to the session.

    Attributes:
        session_id: Session that produced the measurement.
        measurement: The new measurement.
        progress_percent: elapsed_seconds / total_duration in percent, in [0, 100].
        elapsed_seconds: Session time covered after this tick.
        total_duration: Configured session duration.
    """

    session_id: str
    measurement: Measurement
    progress_percent: float
    elapsed_seconds: float
    total_duration: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to the payload delivered to live viewers."""
        return {
            **self.measurement.to_dict(),
            "session_id": self.session_id,
            "progress": self.progress_percent,
            "total_elapsed": self.elapsed_seconds,
            "total_duration": self.total_duration,
        }


@dataclass(frozen=True)
class SessionCompleted:
    """
    The session reached the completed state.

    Attributes:
        session: The finished, frozen session record.
        persistence_error: Set when the snapshot could not be stored.
    """

    session: SessionRecord
    persistence_error: PersistenceError | None = None

    @property
    def session_id(self) -> str:
        return self.session.session_id


@dataclass(frozen=True)
class SessionError:
    """
    A tick failed or the engine detected a fatal inconsistency.

    Attributes:
        session_id: Session that raised the error.
        cause: The underlying MonitorError.
        fatal: True when the session was forced into the failed state.
    """

    session_id: str
    cause: MonitorError
    fatal: bool = False


SessionEvent = SampleProduced | SessionCompleted | SessionError

Listener = Callable[[SessionEvent], None]


class _Closed:
    """Queue marker ending a subscription."""


_CLOSED = _Closed()


class Subscription:
    """
    Async iterator over the events of one channel.

    Example:
        >>> async with channel.subscribe() as events:
        ...     async for event in events:
        ...         print(event)
    """

    def __init__(self, channel: EventChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[SessionEvent | _Closed] = asyncio.Queue(maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: SessionEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropping event",
                extra={"event": type(event).__name__, "dropped": self.dropped},
            )

    def _end(self) -> None:
        if self._closed:
            return
        self._closed = True
        # The end marker must always fit, even when the queue is full
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Stop receiving events."""
        self._channel._detach(self)
        self._end()

    async def get(self) -> SessionEvent | None:
        """Return the next event, or None once the subscription has ended."""
        item = await self._queue.get()
        if isinstance(item, _Closed):
            # Keep returning None to later callers
            self._queue.put_nowait(item)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventChannel:
    """
    Fan-out of session events to independent observers.

    Listener callbacks run synchronously in publish order; an exception in a
    listener is logged and does not affect other observers or the session.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._subscriptions: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        """Check if the channel has delivered its terminal event."""
        return self._closed

    @property
    def observer_count(self) -> int:
        """Number of attached listeners and subscriptions."""
        return len(self._listeners) + len(self._subscriptions)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """
        Attach a synchronous listener.

        Returns:
            A function that detaches the listener again.
        """
        if not self._closed:
            self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIPTION_QUEUE_SIZE) -> Subscription:
        """
        Create an async subscription.

        Subscribing to a closed channel returns an already-ended subscription.
        """
        subscription = Subscription(self, maxsize)
        if self._closed:
            subscription._end()
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: SessionEvent) -> None:
        """Deliver an event to every attached observer."""
        if self._closed:
            logger.debug(
                "Dropping event published on a closed channel",
                extra={"event": type(event).__name__},
            )
            return

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(
                    f"Event listener failed: {e}",
                    extra={"event": type(event).__name__},
                )

        for subscription in list(self._subscriptions):
            subscription._deliver(event)

    def close(self) -> None:
        """End all subscriptions and detach all listeners."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        for subscription in self._subscriptions:
            subscription._end()
        self._subscriptions.clear()
