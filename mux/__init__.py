"""mux: run many shell commands at once and merge their terminal output."""

__version__ = "0.1.0"

from .config import MuxConfig, load_config
from .core import (
    AgentPool,
    AgentStatus,
    CommandInstance,
    InMemoryHistory,
    MergedUnit,
    MergeStrategy,
    OutputMerger,
    StatusKind,
    create_channel,
    expand_template,
)
from .errors import ConfigError, MuxError, RuntimeReadError, ShutdownTimeout, SpawnError
from .session import MuxSession, RunResult

__all__ = [
    "__version__",
    "AgentPool",
    "AgentStatus",
    "CommandInstance",
    "ConfigError",
    "InMemoryHistory",
    "MergeStrategy",
    "MergedUnit",
    "MuxConfig",
    "MuxError",
    "MuxSession",
    "OutputMerger",
    "RunResult",
    "RuntimeReadError",
    "ShutdownTimeout",
    "SpawnError",
    "StatusKind",
    "create_channel",
    "expand_template",
    "load_config",
]
