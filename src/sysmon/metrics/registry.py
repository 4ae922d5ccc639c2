"""
In-process registry of sampling sessions.

The SessionRegistry creates sessions from the configured defaults, keys them
by id, enforces the limit on concurrently running sessions and keeps a
bounded number of finished sessions around for status and statistics
queries.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING

from sysmon.errors import ConflictError, NotFoundError
from sysmon.logging import get_logger
from sysmon.metrics.session import SamplingSession

if TYPE_CHECKING:
    from sysmon.config import MonitoringConfig
    from sysmon.metrics.models import SessionRecord
    from sysmon.metrics.source import MetricSource
    from sysmon.metrics.storage import SessionStore

logger = get_logger(__name__)


class SessionRegistry:
    """
    Owner of the sessions of one process.

    Example:
        >>> registry = SessionRegistry(source, store, config.monitoring)
        >>> session = await registry.start_session(duration=60)
        >>> await registry.stop_session(session.session_id)
    """

    def __init__(
        self,
        source: MetricSource,
        store: SessionStore | None,
        config: MonitoringConfig,
    ) -> None:
        """
        Initialize the SessionRegistry.

        Args:
            source: Metric source shared by all sessions.
            store: Where finished sessions are persisted.
            config: Session defaults and registry limits.
        """
        self._source = source
        self._store = store
        self._config = config
        self._sessions: OrderedDict[str, SamplingSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def active_sessions(self) -> list[SamplingSession]:
        """Sessions that are currently running, oldest first."""
        return [s for s in self._sessions.values() if s.is_running]

    def sessions(self) -> list[SamplingSession]:
        """All registered sessions, oldest first."""
        return list(self._sessions.values())

    def get(self, session_id: str) -> SamplingSession:
        """
        Look up a session.

        Raises:
            NotFoundError: If no session with this id is registered.
        """
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFoundError(
                f"Session not found: {session_id}",
                details={"session_id": session_id},
            ) from None

    async def start_session(
        self,
        duration: float | None = None,
        interval: float | None = None,
    ) -> SamplingSession:
        """
        Create and start a new session.

        Args:
            duration: Session duration (configured default when None).
            interval: Sampling interval (configured default when None).

        Returns:
            The running session.

        Raises:
            ConflictError: If the running-session limit is reached.
            ConfigurationError: If duration or interval is invalid.
            TransientSampleError: If the system information cannot be read.
        """
        # Sessions still starting count against the limit
        running = [s for s in self._sessions.values() if not s.state.is_terminal]
        if len(running) >= self._config.max_running_sessions:
            raise ConflictError(
                "Monitoring session is already running",
                details={
                    "running": [s.session_id for s in running],
                    "max_running_sessions": self._config.max_running_sessions,
                },
            )

        session = SamplingSession(
            self._source,
            self._store,
            max_consecutive_failures=self._config.max_consecutive_failures,
        )
        # Registered before starting so a concurrent start sees the slot taken
        self._sessions[session.session_id] = session
        try:
            await session.start(
                duration if duration is not None else self._config.duration_seconds,
                interval if interval is not None else self._config.interval_seconds,
            )
        except Exception:
            del self._sessions[session.session_id]
            raise

        self._evict_finished()
        return session

    async def stop_session(self, session_id: str | None = None) -> SessionRecord:
        """
        Stop a session.

        Args:
            session_id: Session to stop; None stops the most recently
                started running session.

        Raises:
            NotFoundError: If the session is unknown or nothing is running.
        """
        if session_id is None:
            running = self.active_sessions()
            if not running:
                raise NotFoundError("No monitoring session is running")
            session = running[-1]
        else:
            session = self.get(session_id)

        record = await session.stop()
        self._evict_finished()
        return record

    async def stop_all(self) -> list[SessionRecord]:
        """Stop every running session."""
        records = [await session.stop() for session in self.active_sessions()]
        if records:
            logger.info("Stopped all sessions", extra={"count": len(records)})
        self._evict_finished()
        return records

    def _evict_finished(self) -> None:
        """Drop the oldest finished sessions beyond the retention limit."""
        finished = [
            session_id
            for session_id, session in self._sessions.items()
            if session.state.is_terminal
        ]
        excess = len(finished) - self._config.keep_finished_sessions
        for session_id in finished[: max(excess, 0)]:
            del self._sessions[session_id]
            logger.debug("Evicted finished session", extra={"session_id": session_id})
