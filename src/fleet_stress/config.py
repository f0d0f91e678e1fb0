"""Configuration management for fleet-stress.

This module provides TOML-based configuration support with CLI override capability.

Configuration priority: CLI args > user config > default config
"""

from __future__ import annotations

import argparse
import importlib.resources
import sys
import tomllib
from dataclasses import dataclass
from dataclasses import replace as dataclass_replace
from pathlib import Path
from typing import Any, NamedTuple

from .errors import FleetError
from .movement import MovementPattern


class ConfigurationError(FleetError):
    """Raised when configuration validation fails.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


class DefaultConfigError(Exception):
    """Raised when default configuration cannot be loaded.

    This is a fatal error that prevents the fleet from starting.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to load default configuration: {message}")


class ConfigOverride(NamedTuple):
    """Represents a configuration value override.

    Attributes:
        key: The configuration field name.
        default_value: The default value from default.toml.
        new_value: The new value from user config or CLI.
    """

    key: str
    default_value: Any
    new_value: Any


@dataclass
class FleetConfig:
    """Fleet configuration with all settings.

    All fields are required. Default values are loaded from default.toml.
    Configuration priority: CLI args > user config > default config
    """

    # Session settings
    server_address: str
    module_name: str
    connect_timeout: float
    invoke_timeout: float

    # Fleet settings
    capacity: int
    spawn_rate: int
    tick_frequency: float
    default_pattern: str
    control_interval: float
    history_size: int
    max_bot_failures: int
    latency_probe_interval: float

    # Movement settings
    circle_radius: float
    grid_size: int
    grid_cell_size: float
    move_speed: float

    # Thresholds
    max_latency_ms: float
    min_tick_rate: float
    max_memory_mb: float

    # Resource usage
    resource_source: str
    backend_pid: int

    # Run settings
    run_duration: float
    status_log_interval: float

    # Control API
    control_host: str
    control_port: int

    # Logging settings
    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None


# TOML section -> keys it may hold
_SECTIONS: dict[str, tuple[str, ...]] = {
    "session": ("server_address", "module_name", "connect_timeout", "invoke_timeout"),
    "fleet": (
        "capacity",
        "spawn_rate",
        "tick_frequency",
        "default_pattern",
        "control_interval",
        "history_size",
        "max_bot_failures",
        "latency_probe_interval",
    ),
    "movement": ("circle_radius", "grid_size", "grid_cell_size", "move_speed"),
    "thresholds": ("max_latency_ms", "min_tick_rate", "max_memory_mb"),
    "resources": ("resource_source", "backend_pid"),
    "run": ("run_duration", "status_log_interval"),
    "control": ("control_host", "control_port"),
    "logging": (
        "log_dir",
        "log_level_console",
        "log_json_console",
        "log_rotation",
        "log_retention",
    ),
}

# Valid config keys (for unknown key detection)
_VALID_KEYS: set[str] = {key for keys in _SECTIONS.values() for key in keys}

_OPTIONAL_STRING_KEYS = ("log_dir", "log_rotation", "log_retention")

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_RESOURCE_SOURCES = ["none", "psutil"]


def load_default_toml_data() -> dict[str, Any]:
    """Load the default.toml data from the bundled package resource.

    Returns:
        Parsed TOML data as a dictionary.

    Raises:
        DefaultConfigError: If default.toml cannot be found or parsed.
    """
    try:
        files = importlib.resources.files("fleet_stress")
        default_toml = files.joinpath("default.toml")
        content = default_toml.read_bytes()
        return tomllib.loads(content.decode("utf-8"))
    except FileNotFoundError as e:
        raise DefaultConfigError(f"default.toml not found in package: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise DefaultConfigError(f"Invalid TOML syntax in default.toml: {e}") from e
    except Exception as e:
        raise DefaultConfigError(f"Failed to read default.toml: {e}") from e


def load_config_from_toml(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        tomllib.TOMLDecodeError: If the TOML syntax is invalid.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def flatten_toml_config(toml_data: dict[str, Any]) -> dict[str, Any]:
    """Flatten sectioned TOML data ([session], [fleet], ...) into field names.

    Top-level keys that name a field are accepted as well. Unknown sections
    and unknown keys are ignored.
    """
    flat: dict[str, Any] = {}

    for key, value in toml_data.items():
        if key in _SECTIONS and isinstance(value, dict):
            allowed = _SECTIONS[key]
            for name, item in value.items():
                if name in allowed:
                    flat[name] = item
        elif key in _VALID_KEYS:
            flat[key] = value

    return flat


def process_toml_config(toml_data: dict[str, Any]) -> dict[str, Any]:
    """Process TOML config data into FleetConfig-compatible dictionary.

    Empty strings become None for optional fields.
    """
    result = flatten_toml_config(toml_data)
    for key in _OPTIONAL_STRING_KEYS:
        if result.get(key) == "":
            result[key] = None
    return result


def get_unknown_keys(toml_data: dict[str, Any]) -> list[str]:
    """Detect unknown keys in TOML configuration.

    Keys inside known sections are reported as ``section.key``.
    """
    unknown: list[str] = []

    for key, value in toml_data.items():
        if key in _SECTIONS and isinstance(value, dict):
            allowed = _SECTIONS[key]
            unknown.extend(f"{key}.{name}" for name in value if name not in allowed)
        elif key not in _VALID_KEYS:
            unknown.append(key)

    return unknown


def validate_config(config: FleetConfig) -> list[str]:
    """Validate configuration values.

    Returns:
        List of error messages. Empty list if configuration is valid.
    """
    errors: list[str] = []

    # Counts and rates (must be positive)
    positive_fields = [
        "capacity",
        "spawn_rate",
        "tick_frequency",
        "control_interval",
        "history_size",
        "max_bot_failures",
        "connect_timeout",
        "invoke_timeout",
        "status_log_interval",
        "circle_radius",
        "grid_size",
        "grid_cell_size",
        "move_speed",
    ]
    for field_name in positive_fields:
        value = getattr(config, field_name)
        if value <= 0:
            errors.append(f"{field_name} must be positive, got {value}")

    # Thresholds and switches where 0 is meaningful
    non_negative_fields = [
        "max_latency_ms",
        "min_tick_rate",
        "max_memory_mb",
        "latency_probe_interval",
        "run_duration",
        "backend_pid",
    ]
    for field_name in non_negative_fields:
        value = getattr(config, field_name)
        if value < 0:
            errors.append(f"{field_name} must not be negative, got {value}")

    try:
        MovementPattern.parse(config.default_pattern)
    except ValueError as e:
        errors.append(f"default_pattern: {e}")

    if config.resource_source.lower() not in VALID_RESOURCE_SOURCES:
        errors.append(
            f"resource_source must be one of {VALID_RESOURCE_SOURCES}, "
            f"got {config.resource_source}"
        )

    # Port 0 disables the control API
    if not 0 <= config.control_port <= 65535:
        errors.append(
            f"control_port must be between 0 and 65535, got {config.control_port}"
        )

    if not config.server_address:
        errors.append("server_address must not be empty")

    if config.log_level_console.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"log_level_console must be one of {VALID_LOG_LEVELS}, "
            f"got {config.log_level_console}"
        )

    return errors


def load_default_config() -> FleetConfig:
    """Load the default configuration from the bundled default.toml.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded or is incomplete.
    """
    try:
        toml_data = load_default_toml_data()
        config_data = process_toml_config(toml_data)

        missing = _VALID_KEYS - set(config_data.keys())
        if missing:
            raise DefaultConfigError(
                f"Missing required fields in default.toml: {', '.join(sorted(missing))}"
            )

        return FleetConfig(**config_data)
    except DefaultConfigError:
        raise
    except TypeError as e:
        raise DefaultConfigError(f"Invalid field types in default.toml: {e}") from e


# CLI argument name -> config field
_CLI_OVERRIDES: dict[str, str] = {
    "server": "server_address",
    "module": "module_name",
    "capacity": "capacity",
    "spawn_rate": "spawn_rate",
    "tick_frequency": "tick_frequency",
    "pattern": "default_pattern",
    "max_latency": "max_latency_ms",
    "min_tick_rate": "min_tick_rate",
    "max_memory": "max_memory_mb",
    "duration": "run_duration",
    "backend_pid": "backend_pid",
    "resource_source": "resource_source",
    "latency_probe": "latency_probe_interval",
    "control_port": "control_port",
    "log_level_console": "log_level_console",
    "log_rotation": "log_rotation",
    "log_retention": "log_retention",
}


def merge_cli_args(config: FleetConfig, args: argparse.Namespace) -> FleetConfig:
    """Merge CLI arguments into config (CLI takes precedence).

    Only overrides config values when CLI args are explicitly provided.
    """
    updates: dict[str, Any] = {}

    for arg_name, field_name in _CLI_OVERRIDES.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            updates[field_name] = value

    if getattr(args, "log_dir", None) is not None:
        updates["log_dir"] = str(args.log_dir)
    if getattr(args, "log_json_console", False):
        updates["log_json_console"] = True

    if not updates:
        return config

    return dataclass_replace(config, **updates)


def create_config_from_args(
    args: argparse.Namespace,
) -> tuple[FleetConfig, list[ConfigOverride]]:
    """Create FleetConfig from CLI arguments with layered config loading.

    Configuration priority: CLI args > user config > default config

    Returns:
        Tuple of (FleetConfig instance, list of ConfigOverride).
        The overrides list contains all values from user config that differ from defaults.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded (fatal).
        FileNotFoundError: If specified user config file does not exist.
        tomllib.TOMLDecodeError: If config file has invalid TOML syntax.
        ConfigurationError: If configuration validation fails.
    """
    config = load_default_config()
    overrides: list[ConfigOverride] = []

    if getattr(args, "config", None) is not None:
        user_config_path = Path(args.config)
        toml_data = load_config_from_toml(user_config_path)

        # Logging is not configured yet
        unknown = get_unknown_keys(toml_data)
        if unknown:
            print(f"WARNING: Unknown keys in {user_config_path}:", file=sys.stderr)
            for key in unknown:
                print(f"  - {key}", file=sys.stderr)

        config_data = process_toml_config(toml_data)
        if config_data:
            for key, new_value in config_data.items():
                default_value = getattr(config, key)
                if default_value != new_value:
                    overrides.append(ConfigOverride(key, default_value, new_value))

            config = dataclass_replace(config, **config_data)

    config = merge_cli_args(config, args)

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)

    return config, overrides
