"""Collaborator interfaces the core calls out to."""

from __future__ import annotations

from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol, runtime_checkable

from .models import AgentId, AgentStatus, MergedUnit

# Receives a fresh read-only snapshot on every agent transition
StatusListener = Callable[[Mapping[AgentId, AgentStatus]], None]

# Receives each merged unit as it is appended to the view
UnitHandler = Callable[[MergedUnit], None | Awaitable[None]]


@runtime_checkable
class HistorySink(Protocol):
    """One-way notification of commands that were actually run."""

    def record(self, command: str) -> None:
        """Record one admitted command string."""
        ...


class InMemoryHistory:
    """HistorySink that keeps commands and their run counts in memory."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.counts: Counter[str] = Counter()

    def record(self, command: str) -> None:
        self.commands.append(command)
        self.counts[command] += 1

    def most_common(self, n: int | None = None) -> list[tuple[str, int]]:
        return self.counts.most_common(n)
