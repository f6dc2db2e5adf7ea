"""XDG base directory helpers for mux config and state."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path


def _xdg_home(var: str, fallback: tuple[str, ...], env: Mapping[str, str] | None) -> Path:
    env = os.environ if env is None else env
    value = env.get(var)
    if value:
        return Path(value).expanduser()
    home = env.get("HOME")
    base = Path(home) if home else Path.home()
    return base.joinpath(*fallback)


def config_dir(env: Mapping[str, str] | None = None) -> Path:
    """``$XDG_CONFIG_HOME/mux`` (default ``~/.config/mux``). Not created."""
    return _xdg_home("XDG_CONFIG_HOME", (".config",), env) / "mux"


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    return config_dir(env) / "config.yaml"


def state_dir(env: Mapping[str, str] | None = None) -> Path:
    """``$XDG_STATE_HOME/mux`` (default ``~/.local/state/mux``), created on demand."""
    path = _xdg_home("XDG_STATE_HOME", (".local", "state"), env) / "mux"
    path.mkdir(parents=True, exist_ok=True)
    return path


def log_dir(env: Mapping[str, str] | None = None) -> Path:
    path = state_dir(env) / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def history_file(env: Mapping[str, str] | None = None) -> Path:
    """Prompt history for ``mux shell``."""
    return state_dir(env) / "history"
