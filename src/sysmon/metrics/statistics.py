"""
Summary statistics over a session's measurement sequence.

For each tracked series the aggregator drops absent readings (None or NaN,
e.g. temperature without a sensor) and computes min, max, mean and median.
An empty series yields a zero-valued aggregate so report rendering never has
to special-case optional sensors. The median of an even-length series is the
mean of the two middle values.

Peak lookups give the first measurement holding the maximum CPU usage and
memory usage, for highlighting the peak moment in reports.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from sysmon.metrics.models import Measurement

BYTES_PER_GB = 1024**3


@dataclass(frozen=True)
class SeriesStats:
    """
    Aggregate of one numeric series.

    Attributes:
        min: Smallest value.
        max: Largest value.
        avg: Arithmetic mean.
        median: Median (two-element mean for even lengths).
        count: Number of values after filtering.
    """

    min: float
    max: float
    avg: float
    median: float
    count: int

    @classmethod
    def empty(cls) -> SeriesStats:
        return cls(min=0.0, max=0.0, avg=0.0, median=0.0, count=0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PeakMoment:
    """
    The measurement holding a series maximum.

    Attributes:
        index: Position in the measurement sequence.
        timestamp: Timestamp of that measurement.
        elapsed: Elapsed seconds of that measurement.
        value: The maximum value.
    """

    index: int
    timestamp: str
    elapsed: float
    value: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SessionStatistics:
    """Aggregates for every tracked series plus peak moments."""

    sample_count: int
    cpu_usage: SeriesStats
    cpu_temperature: SeriesStats
    memory_usage_percent: SeriesStats
    memory_used_bytes: SeriesStats
    disk_usage_percent: SeriesStats
    disk_read_kbps: SeriesStats
    disk_write_kbps: SeriesStats
    network_rx_kbps: SeriesStats
    network_tx_kbps: SeriesStats
    gpu_utilization: SeriesStats
    gpu_temperature: SeriesStats
    peak_cpu: PeakMoment
    peak_memory: PeakMoment

    @property
    def memory_used_gb(self) -> SeriesStats:
        """Memory used series converted to GB."""
        stats = self.memory_used_bytes
        return SeriesStats(
            min=stats.min / BYTES_PER_GB,
            max=stats.max / BYTES_PER_GB,
            avg=stats.avg / BYTES_PER_GB,
            median=stats.median / BYTES_PER_GB,
            count=stats.count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a nested dictionary for reports and serialization."""
        return {
            "sample_count": self.sample_count,
            "cpu": {
                "usage": self.cpu_usage.to_dict(),
                "temperature": self.cpu_temperature.to_dict(),
            },
            "memory": {
                "usage_percent": self.memory_usage_percent.to_dict(),
                "used_bytes": self.memory_used_bytes.to_dict(),
                "used_gb": self.memory_used_gb.to_dict(),
            },
            "disk": {
                "usage_percent": self.disk_usage_percent.to_dict(),
                "read_kbps": self.disk_read_kbps.to_dict(),
                "write_kbps": self.disk_write_kbps.to_dict(),
            },
            "network": {
                "rx_kbps": self.network_rx_kbps.to_dict(),
                "tx_kbps": self.network_tx_kbps.to_dict(),
            },
            "gpu": {
                "utilization": self.gpu_utilization.to_dict(),
                "temperature": self.gpu_temperature.to_dict(),
            },
            "peaks": {
                "cpu": self.peak_cpu.to_dict(),
                "memory": self.peak_memory.to_dict(),
            },
        }


def _is_valid(value: float | None) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value))


def series_stats(values: Iterable[float | None]) -> SeriesStats:
    """
    Aggregate one series, ignoring absent readings.

    Example:
        >>> series_stats([10, 20, 30])
        SeriesStats(min=10.0, max=30.0, avg=20.0, median=20.0, count=3)
    """
    filtered = [float(v) for v in values if _is_valid(v)]
    if not filtered:
        return SeriesStats.empty()
    return SeriesStats(
        min=min(filtered),
        max=max(filtered),
        avg=statistics.fmean(filtered),
        median=float(statistics.median(filtered)),
        count=len(filtered),
    )


def peak_moment(
    measurements: Sequence[Measurement],
    key: Callable[[Measurement], float],
) -> PeakMoment:
    """
    Find the first measurement with the maximum value of ``key``.

    Raises:
        ValueError: If measurements is empty.
    """
    if not measurements:
        raise ValueError("peak_moment() requires at least one measurement")
    best = 0
    for index in range(1, len(measurements)):
        if key(measurements[index]) > key(measurements[best]):
            best = index
    peak = measurements[best]
    return PeakMoment(
        index=best,
        timestamp=peak.timestamp,
        elapsed=peak.elapsed,
        value=key(peak),
    )


def compute_statistics(
    measurements: Sequence[Measurement],
) -> SessionStatistics | None:
    """
    Compute statistics for a measurement sequence.

    Returns:
        SessionStatistics, or None when there are no measurements.
    """
    if not measurements:
        return None

    gpu_samples = [m.gpu for m in measurements if m.gpu is not None]

    return SessionStatistics(
        sample_count=len(measurements),
        cpu_usage=series_stats(m.cpu.usage for m in measurements),
        cpu_temperature=series_stats(m.cpu.temperature for m in measurements),
        memory_usage_percent=series_stats(m.memory.usage_percent for m in measurements),
        memory_used_bytes=series_stats(m.memory.used for m in measurements),
        disk_usage_percent=series_stats(m.disk.usage_percent for m in measurements),
        disk_read_kbps=series_stats(m.disk.read_kbps for m in measurements),
        disk_write_kbps=series_stats(m.disk.write_kbps for m in measurements),
        network_rx_kbps=series_stats(m.network.rx_kbps for m in measurements),
        network_tx_kbps=series_stats(m.network.tx_kbps for m in measurements),
        gpu_utilization=series_stats(g.utilization for g in gpu_samples),
        gpu_temperature=series_stats(g.temperature for g in gpu_samples),
        peak_cpu=peak_moment(measurements, lambda m: m.cpu.usage),
        peak_memory=peak_moment(measurements, lambda m: m.memory.usage_percent),
    )
