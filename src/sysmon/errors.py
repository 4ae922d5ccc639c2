"""
Error types for the sysmon monitoring engine.

This module defines the MonitorError base class and subclasses for the
failure kinds the sampling engine distinguishes. Callers should catch
MonitorError (or a subclass) rather than inspecting ad-hoc status values.

Structural errors (conflict, configuration) reject a request outright with
no partial side effects. Transient sample errors are recovered locally by
the session and only surfaced as events. Persistence errors are reported
alongside session completion and never roll it back.
"""

from __future__ import annotations

from typing import Any


class MonitorError(Exception):
    """
    Base exception class for monitoring errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "conflict", "persistence", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise MonitorError(
        ...     error_code="invalid_argument",
        ...     message="interval_seconds must be positive",
        ...     details={"interval_seconds": 0},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a MonitorError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(MonitorError):
    """
    Error raised when an operation receives invalid input arguments.

    Maps to the "invalid_argument" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class ConfigurationError(InvalidArgumentError):
    """
    Error raised for a non-positive or non-numeric duration or interval.

    Raised before any state transition; the session stays idle.
    """


class ConflictError(MonitorError):
    """
    Error raised when a session is started while one is already running.

    The running session's state is left untouched.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConflictError."""
        super().__init__(error_code="conflict", message=message, details=details)


class NotFoundError(MonitorError):
    """Error raised when a session identifier does not resolve."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class TransientSampleError(MonitorError):
    """
    Error raised when one tick's metric query failed or returned malformed data.

    The session skips the tick, publishes the error and keeps running.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransientSampleError."""
        super().__init__(
            error_code="transient_sample", message=message, details=details
        )


class PersistenceError(MonitorError):
    """
    Error raised when a session snapshot cannot be written or read.

    A storage failure does not invalidate the monitoring session itself.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PersistenceError."""
        super().__init__(error_code="persistence", message=message, details=details)


class FatalEngineError(MonitorError):
    """
    Error raised for an unexpected internal inconsistency in the engine.

    When detected, the running session is force-transitioned to failed.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FatalEngineError."""
        super().__init__(error_code="internal", message=message, details=details)
