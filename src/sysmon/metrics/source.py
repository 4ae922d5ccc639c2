"""
Metric sources for sampling sessions.

A MetricSource returns point-in-time host readings. The default
implementation, PsutilMetricSource, queries psutil for CPU, memory,
filesystem, disk IO and network counters, reads CPU temperature from the
thermal zones or psutil sensors, and reads GPU statistics through NVML when
an NVIDIA driver is present.

Each constituent query is read-only and independent, so a snapshot issues
them concurrently on the default executor. A query may fail or report a
missing sensor; missing optional sensors become None, while failures of
required readings propagate to the caller.
"""

from __future__ import annotations

import asyncio
import platform
import socket
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

import psutil

from sysmon.logging import get_logger
from sysmon.metrics.models import (
    CpuInfo,
    DiskInfo,
    GpuInfo,
    GpuMeasurement,
    OsInfo,
    RawSnapshot,
    SystemInfo,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Preferred temperature sensors, in lookup order
CPU_SENSOR_NAMES = ("coretemp", "cpu_thermal", "k10temp", "zenpower", "acpitz")

# Filesystem types never counted in disk totals
PSEUDO_FILESYSTEMS = frozenset(
    {"squashfs", "tmpfs", "devtmpfs", "overlay", "proc", "sysfs", "cgroup", "cgroup2"}
)


@runtime_checkable
class MetricSource(Protocol):
    """Interface of a provider of host readings."""

    async def system_info(self) -> SystemInfo:
        """Return the static host description."""
        ...

    async def snapshot(self) -> RawSnapshot:
        """Return one point-in-time reading."""
        ...


# =============================================================================
# Sensor helpers
# =============================================================================


def _get_cpu_temperature() -> float | None:
    """
    Get CPU temperature in Celsius.

    Reads from /sys/class/thermal/thermal_zone*/temp (Linux).
    Falls back to psutil sensors_temperatures if available.

    Returns:
        Temperature in Celsius, or None if unavailable.
    """
    thermal_zones = sorted(Path("/sys/class/thermal").glob("thermal_zone*/temp"))
    for temp_path in thermal_zones:
        try:
            return int(temp_path.read_text().strip()) / 1000.0
        except (OSError, ValueError):
            continue

    sensors = getattr(psutil, "sensors_temperatures", None)
    if sensors is None:
        return None
    try:
        temps = sensors()
    except (OSError, RuntimeError) as e:
        logger.debug("Could not read CPU temperature from psutil: %r", e)
        return None
    if not temps:
        return None

    for sensor_name in CPU_SENSOR_NAMES:
        entries = temps.get(sensor_name)
        if entries and entries[0].current is not None:
            return float(entries[0].current)

    for entries in temps.values():
        if entries and entries[0].current is not None:
            return float(entries[0].current)
    return None


def _usable_partitions() -> list[Any]:
    """Physical partitions, one per device."""
    seen: set[str] = set()
    partitions = []
    for part in psutil.disk_partitions(all=False):
        if part.fstype in PSEUDO_FILESYSTEMS or part.device in seen:
            continue
        seen.add(part.device)
        partitions.append(part)
    return partitions


def _get_disk_usage() -> tuple[int, int]:
    """
    Sum total and used bytes over all physical filesystems.

    Unreadable mountpoints are skipped; falls back to the root filesystem
    when no partition could be read.
    """
    total = 0
    used = 0
    for part in _usable_partitions():
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (OSError, PermissionError):
            continue
        total += usage.total
        used += usage.used

    if total == 0:
        usage = psutil.disk_usage("/")
        total, used = usage.total, usage.used
    return total, used


def _get_disk_io() -> tuple[int | None, int | None]:
    """Absolute read/write byte counters, or None where unsupported."""
    counters = psutil.disk_io_counters(perdisk=False)
    if counters is None:
        return None, None
    return counters.read_bytes, counters.write_bytes


def _get_network_io(interface: str | None) -> tuple[int | None, int | None]:
    """
    Absolute receive/transmit byte counters.

    Args:
        interface: NIC name, or None for the sum over all interfaces.
    """
    if interface is None:
        counters = psutil.net_io_counters(pernic=False)
    else:
        counters = psutil.net_io_counters(pernic=True).get(interface)
    if counters is None:
        return None, None
    return counters.bytes_recv, counters.bytes_sent


def _read_cpu_frequency() -> tuple[float | None, float | None]:
    """Current and maximum CPU frequency in GHz."""
    try:
        freq = psutil.cpu_freq()
    except (OSError, NotImplementedError, FileNotFoundError):
        return None, None
    if freq is None:
        return None, None
    current = round(freq.current / 1000, 2) if freq.current else None
    maximum = round(freq.max / 1000, 2) if freq.max else None
    return current, maximum


def _read_cpu_brand() -> str:
    """CPU model name, from /proc/cpuinfo on Linux."""
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.exists():
        try:
            for line in cpuinfo.read_text().splitlines():
                if line.lower().startswith(("model name", "hardware")):
                    return line.split(":", 1)[1].strip()
        except OSError:
            pass
    return platform.processor() or platform.machine()


def _read_os_distro() -> str:
    """Distribution pretty name, from /etc/os-release on Linux."""
    os_release = Path("/etc/os-release")
    if os_release.exists():
        try:
            for line in os_release.read_text().splitlines():
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
        except OSError:
            pass
    return f"{platform.system()} {platform.version()}"


_CPU_VENDORS = {
    "intel": "Intel",
    "amd": "AMD",
    "arm": "ARM",
    "apple": "Apple",
    "qualcomm": "Qualcomm",
    "broadcom": "Broadcom",
}


def _cpu_manufacturer(brand: str) -> str:
    lowered = brand.lower()
    for key, vendor in _CPU_VENDORS.items():
        if key in lowered:
            return vendor
    return "unknown"


# =============================================================================
# GPU adapters
# =============================================================================


class _GpuAdapter:
    """GPU adapter for hosts without a supported GPU."""

    def devices(self) -> list[GpuInfo]:
        return []

    def poll(self) -> GpuMeasurement | None:
        return None


class _NvmlGpuAdapter(_GpuAdapter):
    """Reads the first NVIDIA GPU through NVML."""

    def __init__(self) -> None:
        import pynvml  # type: ignore[import-untyped]

        self._nvml = pynvml
        pynvml.nvmlInit()

    @staticmethod
    def _text(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def devices(self) -> list[GpuInfo]:
        nvml = self._nvml
        devices = []
        for index in range(nvml.nvmlDeviceGetCount()):
            handle = nvml.nvmlDeviceGetHandleByIndex(index)
            memory = nvml.nvmlDeviceGetMemoryInfo(handle)
            devices.append(
                GpuInfo(
                    model=self._text(nvml.nvmlDeviceGetName(handle)),
                    vendor="NVIDIA",
                    vram_mb=round(memory.total / 1024**2, 2),
                )
            )
        return devices

    def poll(self) -> GpuMeasurement | None:
        nvml = self._nvml
        try:
            if nvml.nvmlDeviceGetCount() < 1:
                return None
            handle = nvml.nvmlDeviceGetHandleByIndex(0)
            util = nvml.nvmlDeviceGetUtilizationRates(handle)
            memory = nvml.nvmlDeviceGetMemoryInfo(handle)
        except nvml.NVMLError as e:
            # A GPU that stops answering is reported as an absent sensor
            logger.debug("NVML query failed: %r", e)
            return None
        try:
            temperature: float | None = float(
                nvml.nvmlDeviceGetTemperature(handle, nvml.NVML_TEMPERATURE_GPU)
            )
        except nvml.NVMLError:
            temperature = None
        return GpuMeasurement(
            utilization=float(util.gpu),
            temperature=temperature,
            memory_used=round(memory.used / 1024**2, 2),
            memory_total=round(memory.total / 1024**2, 2),
        )


def _build_gpu_adapter(enabled: bool) -> _GpuAdapter:
    """Use NVML when enabled and an NVIDIA driver is present."""
    if not enabled:
        return _GpuAdapter()
    try:
        adapter = _NvmlGpuAdapter()
    except Exception as e:
        logger.info("GPU statistics unavailable", extra={"reason": str(e)})
        return _GpuAdapter()
    logger.debug("Using NVML for GPU statistics")
    return adapter


# =============================================================================
# PsutilMetricSource
# =============================================================================


class PsutilMetricSource:
    """
    MetricSource backed by psutil (and NVML for GPUs).

    Example:
        >>> source = PsutilMetricSource(network_interface="eth0")
        >>> info = await source.system_info()
        >>> snapshot = await source.snapshot()
    """

    def __init__(
        self,
        *,
        network_interface: str | None = None,
        gpu_enabled: bool = True,
    ) -> None:
        """
        Initialize the PsutilMetricSource.

        Args:
            network_interface: NIC to read counters from (None = all NICs).
            gpu_enabled: Whether to try NVML for GPU statistics.
        """
        self._network_interface = network_interface
        self._gpu = _build_gpu_adapter(gpu_enabled)
        # The first non-blocking cpu_percent() call only establishes a baseline
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def system_info(self) -> SystemInfo:
        """
        Capture the static host description.

        Returns:
            SystemInfo for the current host.
        """
        brand, (speed, speed_max), memory, partitions, gpus = await asyncio.gather(
            self._run(_read_cpu_brand),
            self._run(_read_cpu_frequency),
            self._run(psutil.virtual_memory),
            self._run(_usable_partitions),
            self._run(self._gpu.devices),
        )

        disks = []
        for part in partitions:
            try:
                size = psutil.disk_usage(part.mountpoint).total
            except (OSError, PermissionError):
                continue
            disks.append(
                DiskInfo(
                    device=part.device,
                    mountpoint=part.mountpoint,
                    fstype=part.fstype,
                    size=size,
                )
            )

        return SystemInfo(
            os=OsInfo(
                platform=platform.system().lower(),
                distro=_read_os_distro(),
                release=platform.release(),
                arch=platform.machine(),
                hostname=socket.gethostname(),
            ),
            cpu=CpuInfo(
                manufacturer=_cpu_manufacturer(brand),
                brand=brand,
                cores=psutil.cpu_count(logical=True) or 1,
                physical_cores=psutil.cpu_count(logical=False),
                speed_ghz=speed,
                speed_max_ghz=speed_max,
            ),
            memory_total=memory.total,
            gpus=tuple(gpus),
            disks=tuple(disks),
        )

    async def snapshot(self) -> RawSnapshot:
        """
        Take one point-in-time reading.

        Returns:
            RawSnapshot with absolute counters and optional sensors.
        """
        (
            cpu_percent,
            per_cpu,
            temperature,
            memory,
            (disk_total, disk_used),
            (disk_read, disk_write),
            (net_rx, net_tx),
            gpu,
        ) = await asyncio.gather(
            self._run(psutil.cpu_percent, None),
            self._run(psutil.cpu_percent, None, True),
            self._run(_get_cpu_temperature),
            self._run(psutil.virtual_memory),
            self._run(_get_disk_usage),
            self._run(_get_disk_io),
            self._run(_get_network_io, self._network_interface),
            self._run(self._gpu.poll),
        )

        return RawSnapshot(
            cpu_percent=float(cpu_percent),
            per_cpu_percent=[float(core) for core in per_cpu],
            cpu_temperature=temperature,
            memory_total=memory.total,
            memory_used=memory.used,
            memory_free=memory.available,
            disk_total=disk_total,
            disk_used=disk_used,
            disk_read_bytes=disk_read,
            disk_write_bytes=disk_write,
            net_rx_bytes=net_rx,
            net_tx_bytes=net_tx,
            gpu=gpu,
        )
