"""Configuration loading for mux.

Settings come from three layers, later ones winning:

1. Built-in defaults on the dataclasses below.
2. A YAML file: the explicit path, else ``MUX_CONFIG``, else
   ``$XDG_CONFIG_HOME/mux/config.yaml`` if it exists.
3. Environment variables (``MUX_MAX_CONCURRENT``, ``MUX_GRACE_PERIOD``,
   ``MUX_KILL_MARGIN``, ``MUX_MERGE_STRATEGY``, ``MUX_LOG``).

Example config.yaml::

    runner:
      max_concurrent: 16
      grace_period: 5
    output:
      merge_strategy: line
    logging:
      level: DEBUG
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .core.models import MergeStrategy
from .errors import ConfigError
from .paths import default_config_path

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class RunnerConfig:
    """Limits and timings for the agent pool."""

    max_concurrent: int = 64
    grace_period: float = 3.0  # seconds between SIGTERM and SIGKILL
    kill_margin: float = 2.0  # seconds allowed for SIGKILL to be reaped
    shutdown_timeout: float = 10.0
    channel_capacity: int = 256
    shell: str = "sh"


@dataclass
class OutputConfig:
    merge_strategy: str = MergeStrategy.INTERLEAVED.value
    show_labels: bool = True


@dataclass
class LoggingConfig:
    level: str = "INFO"
    max_file_size_mb: int = 10
    max_archives: int = 5


@dataclass
class MuxConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Path | None = None

    @property
    def merge_strategy(self) -> MergeStrategy:
        return MergeStrategy(self.output.merge_strategy)


SECTIONS: dict[str, type] = {
    "runner": RunnerConfig,
    "output": OutputConfig,
    "logging": LoggingConfig,
}

# env var -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "MUX_MAX_CONCURRENT": ("runner", "max_concurrent"),
    "MUX_GRACE_PERIOD": ("runner", "grace_period"),
    "MUX_KILL_MARGIN": ("runner", "kill_margin"),
    "MUX_MERGE_STRATEGY": ("output", "merge_strategy"),
    "MUX_LOG": ("logging", "level"),
}


def _coerce(section: str, key: str, expected: type, value: Any) -> Any:
    """Convert a raw YAML/env value to the field's type."""
    where = f"{section}.{key}"
    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("1", "true", "yes", "on"):
            return True
        if isinstance(value, str) and value.lower() in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"{where} must be a boolean, got {value!r}")
    if expected is int:
        if isinstance(value, bool):
            raise ConfigError(f"{where} must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where} must be an integer, got {value!r}") from exc
    if expected is float:
        if isinstance(value, bool):
            raise ConfigError(f"{where} must be a number, got {value!r}")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where} must be a number, got {value!r}") from exc
    if value is None:
        raise ConfigError(f"{where} must not be empty")
    return str(value)


_FIELD_TYPES = {"int": int, "float": float, "bool": bool, "str": str}


def _apply(config: MuxConfig, section: str, values: Mapping[str, Any]) -> None:
    target = getattr(config, section)
    known = {f.name: _FIELD_TYPES[str(f.type)] for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(
                f"Unknown setting '{section}.{key}'. Allowed: {', '.join(sorted(known))}"
            )
        setattr(target, key, _coerce(section, key, known[key], value))


def validate_config(config: MuxConfig) -> None:
    """Check value ranges.

    Raises:
        ConfigError: If any value is out of range.
    """
    runner = config.runner
    if runner.max_concurrent < 1:
        raise ConfigError(f"runner.max_concurrent must be at least 1, got {runner.max_concurrent}")
    if runner.channel_capacity < 1:
        raise ConfigError(
            f"runner.channel_capacity must be at least 1, got {runner.channel_capacity}"
        )
    for name in ("grace_period", "kill_margin", "shutdown_timeout"):
        if getattr(runner, name) < 0:
            raise ConfigError(f"runner.{name} must not be negative")
    if not runner.shell.strip():
        raise ConfigError("runner.shell must not be empty")

    try:
        MergeStrategy(config.output.merge_strategy)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in MergeStrategy)
        raise ConfigError(
            f"Invalid merge strategy '{config.output.merge_strategy}'. Allowed values: {allowed}."
        ) from exc

    config.logging.level = config.logging.level.upper()
    if config.logging.level not in LOG_LEVELS:
        raise ConfigError(
            f"Invalid log level '{config.logging.level}'. Allowed values: {', '.join(LOG_LEVELS)}."
        )
    if config.logging.max_file_size_mb < 1:
        raise ConfigError("logging.max_file_size_mb must be at least 1")
    if config.logging.max_archives < 0:
        raise ConfigError("logging.max_archives must not be negative")


def load_config(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> MuxConfig:
    """Load mux configuration.

    Args:
        path: YAML config file. If None, checks:
            1. MUX_CONFIG environment variable
            2. $XDG_CONFIG_HOME/mux/config.yaml (skipped when missing)
        env: Environment variables. Defaults to os.environ.

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist.
        ConfigError: If the file or an environment override is invalid.
    """
    env = dict(os.environ) if env is None else env

    if path is None:
        path = env.get("MUX_CONFIG") or None

    if path is None:
        default_path = default_config_path(env)
        if default_path.exists():
            path = default_path

    config = MuxConfig()

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        for section, values in data.items():
            if section not in SECTIONS:
                raise ConfigError(
                    f"Unknown config section '{section}'. Allowed: {', '.join(SECTIONS)}"
                )
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            _apply(config, section, values)
        config.source = config_path
        logger.debug("Loaded config from %s", config_path)

    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            _apply(config, section, {key: value})

    validate_config(config)
    return config
