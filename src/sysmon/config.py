"""
Configuration management for sysmon.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (--config path, or ./sysmon.yml if present)
3. Environment variables (SYSMON_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("sysmon.yml")
DEFAULT_ENV_PREFIX = "SYSMON_"

# Unprefixed variables understood for compatibility with older deployments
LEGACY_ENV_KEYS: dict[str, tuple[str, str]] = {
    "MONITORING_DURATION": ("monitoring", "duration_seconds"),
    "MONITORING_INTERVAL": ("monitoring", "interval_seconds"),
}

# =============================================================================
# Monitoring Configuration
# =============================================================================


class MonitoringConfig(BaseModel):
    """Sampling session defaults and storage settings.

    Attributes:
        duration_seconds: Default session duration.
        interval_seconds: Default sampling interval.
        data_dir: Directory for session snapshots.
        network_interface: NIC whose counters are sampled (None = all NICs).
        gpu_enabled: Whether to query NVML for GPU statistics.
        max_running_sessions: Sessions allowed to run at once per process.
        keep_finished_sessions: Finished sessions kept in the registry.
        max_consecutive_failures: Stop a session after this many failed ticks
            in a row (None disables the cutoff).
    """

    duration_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Default monitoring session duration in seconds",
    )
    interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Default sampling interval in seconds",
    )
    data_dir: str = Field(
        default="./data",
        description="Directory where session snapshots are written",
    )
    network_interface: str | None = Field(
        default=None,
        description="Network interface to sample (default: sum of all interfaces)",
    )
    gpu_enabled: bool = Field(
        default=True,
        description="Query NVIDIA GPUs through NVML when available",
    )
    max_running_sessions: int = Field(
        default=1,
        ge=1,
        description="Maximum number of concurrently running sessions",
    )
    keep_finished_sessions: int = Field(
        default=16,
        ge=0,
        description="Finished sessions retained in memory by the registry",
    )
    max_consecutive_failures: int | None = Field(
        default=None,
        ge=1,
        description="Consecutive failed ticks that end a session (unset: never)",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON log lines.
        log_file: Optional log file path.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log lines instead of plain text",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        # Normalize 'warn' to 'warning'
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        monitoring: Sampling session and storage settings.
        logging: Logging configuration.
    """

    monitoring: MonitoringConfig = Field(
        default_factory=MonitoringConfig,
        description="Sampling session and storage settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
        ValueError: If the top level is not a mapping.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")
    return data


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: SYSMON_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SYSMON_MONITORING__INTERVAL_SECONDS=2

    The unprefixed MONITORING_DURATION and MONITORING_INTERVAL variables are
    honoured too; prefixed variables win when both are set.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for env_key, (section, option) in LEGACY_ENV_KEYS.items():
        if env_key in os.environ:
            result.setdefault(section, {})[option] = _parse_env_value(
                os.environ[env_key]
            )

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, ./sysmon.yml
            is used when it exists.
        env_prefix: Prefix for environment variables.
        cli_overrides: Nested dictionary of command-line overrides.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_overrides={"monitoring": {"duration_seconds": 60}})
        >>> config.monitoring.duration_seconds
        60.0
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if cli_overrides:
        config_dict = _deep_merge(config_dict, cli_overrides)

    return AppConfig(**config_dict)
