"""Data models shared by the expander, agents, pool and merger."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import final

AgentId = int


@dataclass(frozen=True)
class CommandInstance:
    """One concrete command produced by expansion.

    ``argv`` is what gets exec'd; ``command`` is the substituted shell text
    reported to the history collaborator; ``label`` is the parameter
    assignment shown next to the output (empty for plain commands).
    """

    argv: tuple[str, ...]
    cwd: str
    command: str
    label: str = ""

    @classmethod
    def shell(
        cls, command: str, cwd: str, label: str = "", shell: str = "sh"
    ) -> CommandInstance:
        return cls(argv=(shell, "-c", command), cwd=cwd, command=command, label=label)


class StatusKind(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


TERMINAL_KINDS = frozenset({StatusKind.COMPLETED, StatusKind.FAILED, StatusKind.TERMINATED})


@final
@dataclass(frozen=True)
class AgentStatus:
    """Closed status type for an agent.

    Only ``exit_code`` (COMPLETED) and ``cause`` (FAILED) carry data. Build
    instances through the classmethods rather than the constructor.
    """

    kind: StatusKind
    exit_code: int | None = None
    cause: str | None = None

    @classmethod
    def starting(cls) -> AgentStatus:
        return cls(StatusKind.STARTING)

    @classmethod
    def running(cls) -> AgentStatus:
        return cls(StatusKind.RUNNING)

    @classmethod
    def completed(cls, exit_code: int) -> AgentStatus:
        return cls(StatusKind.COMPLETED, exit_code=exit_code)

    @classmethod
    def failed(cls, cause: str) -> AgentStatus:
        return cls(StatusKind.FAILED, cause=cause)

    @classmethod
    def terminated(cls) -> AgentStatus:
        return cls(StatusKind.TERMINATED)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def succeeded(self) -> bool:
        return self.kind == StatusKind.COMPLETED and self.exit_code == 0

    def describe(self) -> str:
        """Human-readable status text, as carried in STATUS message payloads."""
        if self.kind == StatusKind.STARTING:
            return "queued"
        if self.kind == StatusKind.RUNNING:
            return "started"
        if self.kind == StatusKind.COMPLETED:
            if self.exit_code == 0:
                return "completed"
            return f"exited with code {self.exit_code}"
        if self.kind == StatusKind.FAILED:
            return f"error: {self.cause}"
        if self.kind == StatusKind.TERMINATED:
            return "terminated"
        raise AssertionError(f"unhandled status kind: {self.kind!r}")


class StreamTag(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    STATUS = "status"


@dataclass(frozen=True)
class OutputMessage:
    """A chunk of output or a lifecycle event produced by one agent.

    ``timestamp`` is wall-clock time for display only; ordering always uses
    ``seq`` within an agent and the merger's ingress counter across agents.
    """

    agent_id: AgentId
    seq: int
    stream: StreamTag
    payload: bytes
    label: str = ""
    status: AgentStatus | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def output(
        cls, agent_id: AgentId, seq: int, stream: StreamTag, payload: bytes, label: str = ""
    ) -> OutputMessage:
        return cls(agent_id=agent_id, seq=seq, stream=stream, payload=payload, label=label)

    @classmethod
    def status_change(
        cls, agent_id: AgentId, seq: int, status: AgentStatus, label: str = ""
    ) -> OutputMessage:
        return cls(
            agent_id=agent_id,
            seq=seq,
            stream=StreamTag.STATUS,
            payload=status.describe().encode(),
            label=label,
            status=status,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal


class MergeStrategy(str, Enum):
    INTERLEAVED = "interleaved"
    LINE = "line"
    GROUPED = "grouped"


class UnitKind(str, Enum):
    CHUNK = "chunk"
    LINE = "line"
    BLOCK = "block"
    STATUS = "status"


@dataclass(frozen=True)
class MergedUnit:
    """One entry of the merged view.

    ``ingress`` is the ingress counter of the message that caused this unit to
    be emitted; ``index`` is the unit's position in the view.
    """

    index: int
    ingress: int
    agent_id: AgentId
    kind: UnitKind
    payload: bytes
    stream: StreamTag | None = None
    label: str = ""
    status: AgentStatus | None = None
    terminated_line: bool = True
    segments: tuple[tuple[StreamTag, bytes], ...] = ()

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class SubmissionHandle:
    """Returned by ``AgentPool.submit``: the ids assigned to one submission."""

    submission_id: int
    agent_ids: tuple[AgentId, ...]
    commands: tuple[CommandInstance, ...]

    def __len__(self) -> int:
        return len(self.agent_ids)
