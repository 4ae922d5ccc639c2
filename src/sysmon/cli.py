"""
Command-line interface for sysmon.

Commands:
    run    Run one monitoring session and print its statistics
    list   List stored sessions
    show   Print the statistics of a stored session

Examples:
    sysmon run --duration 60 --interval 0.5
    sysmon --data-dir /var/lib/sysmon list
    sysmon show session-1734000000000-1a2b3c4d
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import TYPE_CHECKING, Any, TextIO

import yaml
from pydantic import ValidationError

from sysmon import __version__
from sysmon.config import AppConfig, load_config
from sysmon.errors import MonitorError
from sysmon.logging import get_logger, setup_logging
from sysmon.metrics.events import SampleProduced, SessionError, SessionEvent
from sysmon.metrics.models import SessionState
from sysmon.metrics.registry import SessionRegistry
from sysmon.metrics.source import PsutilMetricSource
from sysmon.metrics.statistics import compute_statistics
from sysmon.metrics.storage import SessionStore

if TYPE_CHECKING:
    from sysmon.metrics.source import MetricSource

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="sysmon",
        description="Bounded host resource monitoring sessions",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        help="Directory for session snapshots",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one monitoring session")
    run_parser.add_argument(
        "--duration",
        type=float,
        help="Session duration in seconds (default from configuration)",
    )
    run_parser.add_argument(
        "--interval",
        type=float,
        help="Sampling interval in seconds (default from configuration)",
    )

    subparsers.add_parser("list", help="List stored sessions")

    show_parser = subparsers.add_parser("show", help="Show stored session statistics")
    show_parser.add_argument("session_id", help="Identifier of the stored session")

    return parser


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed arguments into nested configuration overrides."""
    result: dict[str, Any] = {}

    if parsed.data_dir:
        result.setdefault("monitoring", {})["data_dir"] = parsed.data_dir

    if getattr(parsed, "duration", None) is not None:
        result.setdefault("monitoring", {})["duration_seconds"] = parsed.duration

    if getattr(parsed, "interval", None) is not None:
        result.setdefault("monitoring", {})["interval_seconds"] = parsed.interval

    if parsed.log_level:
        result.setdefault("logging", {})["level"] = parsed.log_level

    if parsed.debug:
        result.setdefault("logging", {})["level"] = "debug"

    return result


def _print_json(data: Any, out: TextIO | None = None) -> None:
    out = out or sys.stdout
    out.write(json.dumps(data, indent=2, default=str))
    out.write("\n")


def _log_event(event: SessionEvent) -> None:
    """Log live session events."""
    if isinstance(event, SampleProduced):
        m = event.measurement
        logger.info(
            "Sample recorded",
            extra={
                "session_id": event.session_id,
                "progress": event.progress_percent,
                "cpu_usage": m.cpu.usage,
                "memory_usage_percent": m.memory.usage_percent,
                "net_rx_kbps": m.network.rx_kbps,
                "net_tx_kbps": m.network.tx_kbps,
            },
        )
    elif isinstance(event, SessionError) and not event.fatal:
        logger.debug(
            "Tick error event",
            extra={"session_id": event.session_id, "error": event.cause.message},
        )


async def run_session(
    config: AppConfig,
    *,
    source: MetricSource | None = None,
    out: TextIO | None = None,
) -> int:
    """
    Run one monitoring session to completion and print its statistics.

    SIGINT and SIGTERM stop the session early; the data gathered so far is
    persisted and summarized.

    Returns:
        Process exit code.
    """
    monitoring = config.monitoring
    if source is None:
        source = PsutilMetricSource(
            network_interface=monitoring.network_interface,
            gpu_enabled=monitoring.gpu_enabled,
        )
    registry = SessionRegistry(source, SessionStore(monitoring.data_dir), monitoring)

    session = await registry.start_session()
    session.add_listener(_log_event)

    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task] = set()

    def signal_handler() -> None:
        logger.info("Received shutdown signal", extra={"session_id": session.session_id})
        task = asyncio.create_task(registry.stop_all())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
            installed.append(sig)
        except (ValueError, NotImplementedError, RuntimeError):
            # Signal handling not supported on this platform or thread
            pass

    try:
        record = await session.wait_closed()
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    statistics = session.get_statistics()
    _print_json(
        {
            "session_id": record.session_id,
            "state": record.state.value,
            "start_time": record.start_time,
            "end_time": record.end_time,
            "measurement_count": len(record.measurements),
            "snapshot_path": session.snapshot_path,
            "persistence_error": (
                session.persistence_error.to_dict() if session.persistence_error else None
            ),
            "statistics": statistics.to_dict() if statistics else None,
        },
        out,
    )
    return EXIT_OK if record.state is SessionState.COMPLETED else EXIT_FAILED


async def list_sessions(config: AppConfig, *, out: TextIO | None = None) -> int:
    """Print the stored sessions, newest first."""
    store = SessionStore(config.monitoring.data_dir)
    sessions = await store.list_sessions()
    _print_json([summary.to_dict() for summary in sessions], out)
    return EXIT_OK


async def show_session(
    config: AppConfig,
    session_id: str,
    *,
    out: TextIO | None = None,
) -> int:
    """Print metadata and statistics of one stored session."""
    store = SessionStore(config.monitoring.data_dir)
    record = await store.load(session_id)
    statistics = compute_statistics(record.measurements)
    _print_json(
        {
            "session_id": record.session_id,
            "state": record.state.value,
            "duration_seconds": record.duration_seconds,
            "interval_seconds": record.interval_seconds,
            "start_time": record.start_time,
            "end_time": record.end_time,
            "system_info": record.system_info.to_dict() if record.system_info else None,
            "statistics": statistics.to_dict() if statistics else None,
        },
        out,
    )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """
    Entry point of the sysmon command.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    parsed = parser.parse_args(argv)

    try:
        config = load_config(
            config_path=parsed.config,
            cli_overrides=_cli_overrides(parsed),
        )
    except (FileNotFoundError, ValidationError, ValueError, yaml.YAMLError) as e:
        print(f"sysmon: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(config.logging)

    try:
        if parsed.command == "run":
            return asyncio.run(run_session(config))
        if parsed.command == "list":
            return asyncio.run(list_sessions(config))
        return asyncio.run(show_session(config, parsed.session_id))
    except MonitorError as e:
        logger.error(
            "Command failed",
            extra={"command": parsed.command, "error_code": e.error_code},
        )
        _print_json({"error": e.to_dict()}, sys.stderr)
        return EXIT_USAGE if e.error_code in ("invalid_argument", "not_found") else EXIT_FAILED
