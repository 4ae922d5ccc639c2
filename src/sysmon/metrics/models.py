"""
Data models for monitoring sessions.

This module defines:
- SystemInfo: static host description captured once per session
- RawSnapshot: unnormalized point-in-time reading from a MetricSource
- Measurement: immutable normalized result of one successful tick
- SessionRecord: session metadata plus the ordered measurement sequence

Serialized form (one JSON document per session):
    {
        "session_id": "session-1734000000000-1a2b3c4d",
        "state": "completed",
        "duration_seconds": 300.0,
        "interval_seconds": 1.0,
        "start_time": "2024-12-12T10:00:00+00:00",
        "end_time": "2024-12-12T10:05:00+00:00",
        "system_info": {...},
        "measurements": [{"timestamp": ..., "elapsed": 0.0, "cpu": {...}, ...}]
    }
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sysmon.errors import FatalEngineError

# Decimal places kept for derived measurement values
MEASUREMENT_PRECISION = 2


class SessionState(str, Enum):
    """
    Lifecycle state of a sampling session.

    State transitions:
    - idle → running (start)
    - running → completed (stop or deadline)
    - running → failed (internal inconsistency)
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (SessionState.COMPLETED, SessionState.FAILED)


def new_session_id() -> str:
    """Generate a session identifier that is unique across concurrent sessions."""
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def round_value(value: float | None, ndigits: int = MEASUREMENT_PRECISION) -> float | None:
    """Round a derived value for display stability, passing None through."""
    if value is None:
        return None
    return round(float(value), ndigits)


# =============================================================================
# System Information
# =============================================================================


@dataclass(frozen=True)
class OsInfo:
    platform: str
    distro: str
    release: str
    arch: str
    hostname: str


@dataclass(frozen=True)
class CpuInfo:
    manufacturer: str
    brand: str
    cores: int
    physical_cores: int | None
    speed_ghz: float | None
    speed_max_ghz: float | None


@dataclass(frozen=True)
class GpuInfo:
    model: str
    vendor: str
    vram_mb: float | None


@dataclass(frozen=True)
class DiskInfo:
    device: str
    mountpoint: str
    fstype: str
    size: int

    @property
    def size_gb(self) -> float:
        return round(self.size / 1024**3, MEASUREMENT_PRECISION)


@dataclass(frozen=True)
class SystemInfo:
    """
    Static host description captured once at session start.

    Attributes:
        os: Operating system details.
        cpu: CPU model and core counts.
        memory_total: Physical memory in bytes.
        gpus: Detected GPUs (empty when none or unsupported).
        disks: Mounted filesystems included in disk totals.
    """

    os: OsInfo
    cpu: CpuInfo
    memory_total: int
    gpus: tuple[GpuInfo, ...] = ()
    disks: tuple[DiskInfo, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "os": asdict(self.os),
            "cpu": asdict(self.cpu),
            "memory": {
                "total": self.memory_total,
                "total_gb": round(self.memory_total / 1024**3, MEASUREMENT_PRECISION),
            },
            "gpus": [asdict(gpu) for gpu in self.gpus],
            "disks": [
                {**asdict(disk), "size_gb": disk.size_gb} for disk in self.disks
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemInfo:
        """Rebuild a SystemInfo from its serialized form."""
        return cls(
            os=OsInfo(**data["os"]),
            cpu=CpuInfo(**data["cpu"]),
            memory_total=int(data["memory"]["total"]),
            gpus=tuple(GpuInfo(**gpu) for gpu in data.get("gpus", [])),
            disks=tuple(
                DiskInfo(
                    device=disk["device"],
                    mountpoint=disk["mountpoint"],
                    fstype=disk["fstype"],
                    size=int(disk["size"]),
                )
                for disk in data.get("disks", [])
            ),
        )


# =============================================================================
# Raw Snapshot
# =============================================================================


@dataclass
class RawSnapshot:
    """
    Point-in-time reading returned by a MetricSource.

    Counters are absolute and monotonic; the session turns them into rates.
    Optional sensors are None when absent.

    Attributes:
        cpu_percent: Overall CPU load in percent.
        per_cpu_percent: Load per logical core in percent.
        cpu_temperature: CPU package temperature in Celsius.
        memory_total: Physical memory in bytes.
        memory_used: Used memory in bytes.
        memory_free: Free memory in bytes.
        disk_total: Summed size of all sampled filesystems in bytes.
        disk_used: Summed used space in bytes.
        disk_read_bytes: Absolute bytes read counter.
        disk_write_bytes: Absolute bytes written counter.
        net_rx_bytes: Absolute bytes received counter.
        net_tx_bytes: Absolute bytes transmitted counter.
        gpu: GPU reading, or None without a supported GPU.
    """

    cpu_percent: float
    per_cpu_percent: list[float]
    cpu_temperature: float | None
    memory_total: int
    memory_used: int
    memory_free: int
    disk_total: int
    disk_used: int
    disk_read_bytes: int | None
    disk_write_bytes: int | None
    net_rx_bytes: int | None
    net_tx_bytes: int | None
    gpu: GpuMeasurement | None = None

    def counters(self) -> dict[str, float]:
        """Return the absolute counters present in this snapshot."""
        readings = {
            "disk_read": self.disk_read_bytes,
            "disk_write": self.disk_write_bytes,
            "net_rx": self.net_rx_bytes,
            "net_tx": self.net_tx_bytes,
        }
        return {name: value for name, value in readings.items() if value is not None}


# =============================================================================
# Measurement
# =============================================================================


@dataclass(frozen=True)
class CpuMeasurement:
    usage: float
    temperature: float | None
    cores: tuple[float, ...]


@dataclass(frozen=True)
class MemoryMeasurement:
    total: int
    used: int
    free: int
    usage_percent: float


@dataclass(frozen=True)
class DiskMeasurement:
    total: int
    used: int
    usage_percent: float
    read_kbps: float
    write_kbps: float


@dataclass(frozen=True)
class NetworkMeasurement:
    rx_kbps: float
    tx_kbps: float


@dataclass(frozen=True)
class GpuMeasurement:
    utilization: float | None
    temperature: float | None
    memory_used: float | None
    memory_total: float | None


@dataclass(frozen=True)
class Measurement:
    """
    Normalized result of one successful tick.

    Attributes:
        timestamp: ISO 8601 wall-clock time of the reading.
        elapsed: Nominal seconds since session start (a multiple of the interval).
        cpu: CPU load, temperature and per-core load.
        memory: Memory usage.
        disk: Aggregate filesystem usage and IO rates.
        network: Receive/transmit rates.
        gpu: GPU statistics, or None without a supported GPU.
    """

    timestamp: str
    elapsed: float
    cpu: CpuMeasurement
    memory: MemoryMeasurement
    disk: DiskMeasurement
    network: NetworkMeasurement
    gpu: GpuMeasurement | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["cpu"]["cores"] = list(self.cpu.cores)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Measurement:
        """Rebuild a Measurement from its serialized form."""
        cpu = data["cpu"]
        gpu = data.get("gpu")
        return cls(
            timestamp=data["timestamp"],
            elapsed=float(data["elapsed"]),
            cpu=CpuMeasurement(
                usage=cpu["usage"],
                temperature=cpu.get("temperature"),
                cores=tuple(cpu.get("cores", ())),
            ),
            memory=MemoryMeasurement(**data["memory"]),
            disk=DiskMeasurement(**data["disk"]),
            network=NetworkMeasurement(**data["network"]),
            gpu=GpuMeasurement(**gpu) if gpu else None,
        )


def _require_number(name: str, value: Any, *, minimum: float = 0.0) -> float:
    """Return value as float, rejecting None, NaN, infinities and negatives."""
    if value is None or isinstance(value, bool):
        raise ValueError(f"{name} is missing")
    number = float(value)
    if not math.isfinite(number) or number < minimum:
        raise ValueError(f"{name} is out of range: {value!r}")
    return number


def _optional_number(value: Any) -> float | None:
    """Return value as float, mapping absent or non-finite readings to None."""
    if value is None or isinstance(value, bool):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def build_measurement(
    snapshot: RawSnapshot,
    rates: dict[str, float],
    *,
    elapsed: float,
    timestamp: datetime,
) -> Measurement:
    """
    Normalize a raw snapshot and counter rates into a Measurement.

    Rates are expected in bytes per second and reported in KB/s. Derived
    values are rounded to MEASUREMENT_PRECISION decimals.

    Raises:
        ValueError: If a required reading is missing or out of range.
    """
    cpu_usage = _require_number("cpu_percent", snapshot.cpu_percent)
    memory_total = _require_number("memory_total", snapshot.memory_total)
    if memory_total <= 0:
        raise ValueError("memory_total must be positive")
    memory_used = _require_number("memory_used", snapshot.memory_used)
    memory_free = _require_number("memory_free", snapshot.memory_free)
    disk_total = _require_number("disk_total", snapshot.disk_total)
    disk_used = _require_number("disk_used", snapshot.disk_used)

    disk_percent = (disk_used / disk_total) * 100 if disk_total > 0 else 0.0

    return Measurement(
        timestamp=timestamp.isoformat(),
        elapsed=elapsed,
        cpu=CpuMeasurement(
            usage=round(cpu_usage, MEASUREMENT_PRECISION),
            temperature=round_value(_optional_number(snapshot.cpu_temperature)),
            cores=tuple(
                round(_require_number("per_cpu_percent", core), MEASUREMENT_PRECISION)
                for core in snapshot.per_cpu_percent
            ),
        ),
        memory=MemoryMeasurement(
            total=int(memory_total),
            used=int(memory_used),
            free=int(memory_free),
            usage_percent=round((memory_used / memory_total) * 100, MEASUREMENT_PRECISION),
        ),
        disk=DiskMeasurement(
            total=int(disk_total),
            used=int(disk_used),
            usage_percent=round(disk_percent, MEASUREMENT_PRECISION),
            read_kbps=round(rates.get("disk_read", 0.0) / 1024, MEASUREMENT_PRECISION),
            write_kbps=round(rates.get("disk_write", 0.0) / 1024, MEASUREMENT_PRECISION),
        ),
        network=NetworkMeasurement(
            rx_kbps=round(rates.get("net_rx", 0.0) / 1024, MEASUREMENT_PRECISION),
            tx_kbps=round(rates.get("net_tx", 0.0) / 1024, MEASUREMENT_PRECISION),
        ),
        gpu=_normalize_gpu(snapshot.gpu),
    )


def _normalize_gpu(gpu: GpuMeasurement | None) -> GpuMeasurement | None:
    if gpu is None:
        return None
    return GpuMeasurement(
        utilization=round_value(_optional_number(gpu.utilization)),
        temperature=round_value(_optional_number(gpu.temperature)),
        memory_used=round_value(_optional_number(gpu.memory_used)),
        memory_total=round_value(_optional_number(gpu.memory_total)),
    )


# =============================================================================
# Session Record
# =============================================================================


@dataclass
class SessionRecord:
    """
    Metadata and measurements of one monitoring session.

    The measurement sequence is append-only while the session runs and is
    frozen once the session reaches a terminal state.

    Attributes:
        session_id: Unique session identifier.
        duration_seconds: Configured session duration.
        interval_seconds: Configured sampling interval.
        state: Current lifecycle state.
        start_time: When the session entered running.
        end_time: When the session reached a terminal state.
        system_info: Static host description captured at start.
        measurements: Ordered measurement sequence.
    """

    session_id: str
    duration_seconds: float
    interval_seconds: float
    state: SessionState = SessionState.IDLE
    start_time: datetime | None = None
    end_time: datetime | None = None
    system_info: SystemInfo | None = None
    measurements: list[Measurement] = field(default_factory=list)
    _frozen: bool = field(default=False, repr=False, compare=False)

    @property
    def frozen(self) -> bool:
        """Check if the measurement sequence can no longer change."""
        return self._frozen

    @property
    def elapsed_wall_seconds(self) -> float | None:
        """Wall-clock length of the session, once it has ended."""
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def append(self, measurement: Measurement) -> None:
        """
        Append a measurement, enforcing temporal order.

        Raises:
            FatalEngineError: If the record is frozen or elapsed does not increase.
        """
        if self._frozen:
            raise FatalEngineError(
                "Measurement appended to a finished session",
                details={"session_id": self.session_id, "elapsed": measurement.elapsed},
            )
        if self.measurements and measurement.elapsed <= self.measurements[-1].elapsed:
            raise FatalEngineError(
                "Measurement elapsed values must be strictly increasing",
                details={
                    "session_id": self.session_id,
                    "previous": self.measurements[-1].elapsed,
                    "elapsed": measurement.elapsed,
                },
            )
        self.measurements.append(measurement)

    def freeze(self) -> None:
        """Make the measurement sequence immutable."""
        self._frozen = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "duration_seconds": self.duration_seconds,
            "interval_seconds": self.interval_seconds,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "system_info": self.system_info.to_dict() if self.system_info else None,
            "measurements": [m.to_dict() for m in self.measurements],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """Rebuild a frozen SessionRecord from its serialized form."""
        record = cls(
            session_id=data["session_id"],
            duration_seconds=float(data["duration_seconds"]),
            interval_seconds=float(data["interval_seconds"]),
            state=SessionState(data["state"]),
            start_time=(
                datetime.fromisoformat(data["start_time"]) if data.get("start_time") else None
            ),
            end_time=(
                datetime.fromisoformat(data["end_time"]) if data.get("end_time") else None
            ),
            system_info=(
                SystemInfo.from_dict(data["system_info"]) if data.get("system_info") else None
            ),
            measurements=[Measurement.from_dict(m) for m in data.get("measurements", [])],
        )
        record.freeze()
        return record
