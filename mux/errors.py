"""Error types raised by the mux engine."""


class MuxError(Exception):
    """Base class for all mux errors."""


class ConfigError(MuxError, ValueError):
    """Raised for malformed templates or invalid configuration values.

    Expansion errors are raised before any process is spawned, so a rejected
    submission never leaves partial state behind.
    """


class SpawnError(MuxError):
    """Raised when a child process cannot be launched."""

    def __init__(self, command: str, details: str) -> None:
        self.command = command
        super().__init__(f"Failed to spawn '{command}': {details}")


class RuntimeReadError(MuxError):
    """Raised when reading from a pseudo-terminal fails for a reason other than EOF."""

    def __init__(self, agent_id: int, errno_value: int | None, details: str) -> None:
        self.agent_id = agent_id
        self.errno = errno_value
        super().__init__(f"Agent #{agent_id} read failed: {details}")


class ShutdownTimeout(MuxError):
    """A killed process was not reaped within the kill margin (logged, not raised)."""

    def __init__(self, pid: int, waited: float) -> None:
        self.pid = pid
        self.waited = waited
        super().__init__(f"Process {pid} still alive {waited:.1f}s after SIGKILL")
