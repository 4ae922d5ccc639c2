"""
JSON snapshot storage for finished sessions.

Each session is written as one document, ``<data_dir>/<session_id>.json``,
holding the full SessionRecord (metadata plus measurement sequence). Writes
are atomic: the document goes to a temporary file that is then renamed over
the target. File IO runs on the default executor so the event loop never
blocks on disk.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sysmon.errors import InvalidArgumentError, NotFoundError, PersistenceError
from sysmon.logging import get_logger
from sysmon.metrics.models import SessionRecord

logger = get_logger(__name__)

SNAPSHOT_SUFFIX = ".json"

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass
class StoredSession:
    """
    Summary of a stored session snapshot.

    Attributes:
        session_id: Session identifier.
        path: Snapshot file path.
        size_bytes: Snapshot file size.
        start_time: Session start time, if readable.
        end_time: Session end time, if readable.
        measurement_count: Number of measurements, if readable.
    """

    session_id: str
    path: Path
    size_bytes: int
    start_time: str | None = None
    end_time: str | None = None
    measurement_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "measurement_count": self.measurement_count,
        }


def validate_session_id(session_id: str) -> str:
    """
    Ensure a session id is safe to use as a file name.

    Raises:
        InvalidArgumentError: If the id is empty or contains path characters.
    """
    if not isinstance(session_id, str) or not _SESSION_ID_PATTERN.match(session_id):
        raise InvalidArgumentError(
            f"Invalid session id: {session_id!r}",
            details={"session_id": session_id},
        )
    return session_id


class SessionStore:
    """
    Directory of JSON session snapshots.

    Example:
        >>> store = SessionStore("./data")
        >>> path = await store.save(record)
        >>> record = await store.load(record.session_id)
        >>> summaries = await store.list_sessions()
    """

    def __init__(self, data_dir: str | Path) -> None:
        """
        Initialize the SessionStore.

        Args:
            data_dir: Directory holding the snapshots (created on first save).
        """
        self.data_dir = Path(data_dir)

    def path_for(self, session_id: str) -> Path:
        """Return the snapshot path of a session."""
        return self.data_dir / f"{validate_session_id(session_id)}{SNAPSHOT_SUFFIX}"

    async def save(self, record: SessionRecord) -> Path:
        """
        Write a session snapshot atomically.

        Args:
            record: The session to persist.

        Returns:
            Path of the written snapshot.

        Raises:
            PersistenceError: If the snapshot cannot be written.
        """
        path = self.path_for(record.session_id)
        payload = record.to_dict()

        def _write() -> None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")
            try:
                with open(temp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                temp_path.replace(path)
            except Exception:
                temp_path.unlink(missing_ok=True)
                raise

        try:
            await asyncio.get_running_loop().run_in_executor(None, _write)
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to save session snapshot",
                extra={"session_id": record.session_id, "path": str(path), "error": str(e)},
            )
            raise PersistenceError(
                f"Failed to save session snapshot: {e}",
                details={"session_id": record.session_id, "path": str(path)},
            ) from e

        logger.info(
            "Session snapshot saved",
            extra={
                "session_id": record.session_id,
                "path": str(path),
                "measurements": len(record.measurements),
            },
        )
        return path

    async def load(self, session_id: str) -> SessionRecord:
        """
        Read a session snapshot.

        Raises:
            InvalidArgumentError: If the session id is malformed.
            NotFoundError: If no snapshot exists for the session.
            PersistenceError: If the snapshot cannot be read or parsed.
        """
        path = self.path_for(session_id)

        def _read() -> dict[str, Any]:
            with open(path, encoding="utf-8") as f:
                return json.load(f)

        try:
            data = await asyncio.get_running_loop().run_in_executor(None, _read)
        except FileNotFoundError as e:
            raise NotFoundError(
                f"Session not found: {session_id}",
                details={"session_id": session_id},
            ) from e
        except (OSError, ValueError) as e:
            raise PersistenceError(
                f"Failed to read session snapshot: {e}",
                details={"session_id": session_id, "path": str(path)},
            ) from e

        try:
            return SessionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Malformed session snapshot: {e}",
                details={"session_id": session_id, "path": str(path)},
            ) from e

    async def exists(self, session_id: str) -> bool:
        """Check if a snapshot exists for the session."""
        return self.path_for(session_id).exists()

    async def list_sessions(self) -> list[StoredSession]:
        """
        List stored sessions, newest first.

        Unreadable snapshots are listed without their metadata.
        """

        def _scan() -> list[StoredSession]:
            if not self.data_dir.is_dir():
                return []
            sessions = []
            for path in self.data_dir.glob(f"*{SNAPSHOT_SUFFIX}"):
                summary = StoredSession(
                    session_id=path.stem,
                    path=path,
                    size_bytes=path.stat().st_size,
                )
                try:
                    with open(path, encoding="utf-8") as f:
                        data = json.load(f)
                    if not isinstance(data, dict):
                        raise ValueError("snapshot is not a JSON object")
                    start_time = data.get("start_time")
                    end_time = data.get("end_time")
                    summary.start_time = start_time if isinstance(start_time, str) else None
                    summary.end_time = end_time if isinstance(end_time, str) else None
                    summary.measurement_count = len(data.get("measurements", []))
                except (OSError, TypeError, ValueError) as e:
                    logger.warning(
                        "Unreadable session snapshot",
                        extra={"path": str(path), "error": str(e)},
                    )
                sessions.append(summary)
            return sessions

        sessions = await asyncio.get_running_loop().run_in_executor(None, _scan)

        def _sort_key(summary: StoredSession) -> float:
            if summary.start_time:
                try:
                    return datetime.fromisoformat(summary.start_time).timestamp()
                except ValueError:
                    pass
            return summary.path.stat().st_mtime

        return sorted(sessions, key=_sort_key, reverse=True)
