"""
Pytest configuration and shared fixtures for the sysmon tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from sysmon.metrics.models import (
    CpuInfo,
    CpuMeasurement,
    DiskMeasurement,
    GpuMeasurement,
    Measurement,
    MemoryMeasurement,
    NetworkMeasurement,
    OsInfo,
    RawSnapshot,
    SystemInfo,
)
from sysmon.metrics.storage import SessionStore

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

GB = 1024**3

BASE_TIME = datetime(2024, 12, 12, 10, 0, 0, tzinfo=UTC)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Builders
# =============================================================================


def build_system_info() -> SystemInfo:
    return SystemInfo(
        os=OsInfo(
            platform="linux",
            distro="Debian GNU/Linux 12 (bookworm)",
            release="6.1.0",
            arch="x86_64",
            hostname="testhost",
        ),
        cpu=CpuInfo(
            manufacturer="Intel",
            brand="Intel(R) Core(TM) i7-8650U CPU @ 1.90GHz",
            cores=4,
            physical_cores=2,
            speed_ghz=1.9,
            speed_max_ghz=4.2,
        ),
        memory_total=8 * GB,
    )


def build_snapshot(**overrides: Any) -> RawSnapshot:
    values: dict[str, Any] = {
        "cpu_percent": 25.0,
        "per_cpu_percent": [20.0, 30.0, 25.0, 25.0],
        "cpu_temperature": 45.0,
        "memory_total": 8 * GB,
        "memory_used": 4 * GB,
        "memory_free": 4 * GB,
        "disk_total": 100 * GB,
        "disk_used": 25 * GB,
        "disk_read_bytes": 0,
        "disk_write_bytes": 0,
        "net_rx_bytes": 0,
        "net_tx_bytes": 0,
        "gpu": None,
    }
    values.update(overrides)
    return RawSnapshot(**values)


def build_measurement(
    elapsed: float,
    *,
    cpu: float = 10.0,
    memory_percent: float = 50.0,
    temperature: float | None = 45.0,
    rx_kbps: float = 0.0,
    tx_kbps: float = 0.0,
    gpu: GpuMeasurement | None = None,
) -> Measurement:
    total = 8 * GB
    used = int(total * memory_percent / 100)
    return Measurement(
        timestamp=(BASE_TIME + timedelta(seconds=elapsed)).isoformat(),
        elapsed=elapsed,
        cpu=CpuMeasurement(usage=cpu, temperature=temperature, cores=(cpu, cpu)),
        memory=MemoryMeasurement(
            total=total,
            used=used,
            free=total - used,
            usage_percent=memory_percent,
        ),
        disk=DiskMeasurement(
            total=100 * GB,
            used=50 * GB,
            usage_percent=50.0,
            read_kbps=0.0,
            write_kbps=0.0,
        ),
        network=NetworkMeasurement(rx_kbps=rx_kbps, tx_kbps=tx_kbps),
        gpu=gpu,
    )


class FakeMetricSource:
    """
    Scripted MetricSource.

    Network counters grow by ``rx_step``/``tx_step`` bytes per snapshot call.
    Calls listed in ``fail_on`` (1-based) raise OSError.
    """

    def __init__(
        self,
        *,
        fail_on: Iterable[int] = (),
        fail_always: bool = False,
        delay: float = 0.0,
        rx_step: int = 2048,
        tx_step: int = 1024,
        system_info_error: Exception | None = None,
        snapshot_factory: Callable[[int], RawSnapshot] | None = None,
    ) -> None:
        self.fail_on = set(fail_on)
        self.fail_always = fail_always
        self.delay = delay
        self.rx_step = rx_step
        self.tx_step = tx_step
        self.system_info_error = system_info_error
        self.snapshot_factory = snapshot_factory
        self.calls = 0
        self.system_info_calls = 0

    async def system_info(self) -> SystemInfo:
        self.system_info_calls += 1
        if self.system_info_error is not None:
            raise self.system_info_error
        return build_system_info()

    async def snapshot(self) -> RawSnapshot:
        self.calls += 1
        call = self.calls
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_always or call in self.fail_on:
            raise OSError(f"sensor read failed on call {call}")
        if self.snapshot_factory is not None:
            return self.snapshot_factory(call)
        return build_snapshot(
            cpu_percent=float(10 * call % 100),
            net_rx_bytes=call * self.rx_step,
            net_tx_bytes=call * self.tx_step,
            disk_read_bytes=call * 4096,
            disk_write_bytes=call * 1024,
        )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_source() -> FakeMetricSource:
    """A FakeMetricSource that never fails."""
    return FakeMetricSource()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    """A SessionStore writing into a temporary directory."""
    return SessionStore(tmp_path / "data")
