"""
Monitoring engine for sysmon.

This module provides bounded sampling sessions over host metrics, with
counter-to-rate conversion, event delivery, summary statistics and JSON
snapshot persistence.

Components:
- source: MetricSource protocol and the psutil implementation
- rate: Counter-to-rate conversion
- session: SamplingSession state machine
- events: Session events and their delivery channel
- statistics: Summary statistics and peak lookups
- storage: JSON snapshot storage
- registry: In-process registry of sessions
"""

from sysmon.metrics.events import (
    EventChannel,
    SampleProduced,
    SessionCompleted,
    SessionError,
    Subscription,
)
from sysmon.metrics.models import (
    Measurement,
    RawSnapshot,
    SessionRecord,
    SessionState,
    SystemInfo,
)
from sysmon.metrics.rate import RateCalculator
from sysmon.metrics.registry import SessionRegistry
from sysmon.metrics.session import SamplingSession, SessionStatus
from sysmon.metrics.source import MetricSource, PsutilMetricSource
from sysmon.metrics.statistics import SessionStatistics, compute_statistics
from sysmon.metrics.storage import SessionStore

__all__ = [
    "EventChannel",
    "Measurement",
    "MetricSource",
    "PsutilMetricSource",
    "RateCalculator",
    "RawSnapshot",
    "SampleProduced",
    "SamplingSession",
    "SessionCompleted",
    "SessionError",
    "SessionRecord",
    "SessionRegistry",
    "SessionState",
    "SessionStatistics",
    "SessionStatus",
    "SessionStore",
    "Subscription",
    "SystemInfo",
    "compute_statistics",
]
