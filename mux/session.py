"""MuxSession: one pool, one merger and the channel between them.

One session = one shared pool. Each ``run()`` submits a template and waits for
exactly its own agents, so several submissions can overlap (as in ``mux
shell``). Use as an async context manager so every child is gone on exit::

    async with MuxSession(config) as session:
        session.merger.subscribe(print_unit)
        result = await session.run("[n=1-3] echo {n}")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from types import TracebackType

from .config import MuxConfig
from .core.merger import OutputMerger, create_channel
from .core.models import (
    AgentId,
    AgentStatus,
    MergedUnit,
    MergeStrategy,
    SubmissionHandle,
    UnitKind,
)
from .core.pool import AgentPool
from .core.protocol import HistorySink, UnitHandler

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of one submission."""

    handle: SubmissionHandle
    statuses: dict[AgentId, AgentStatus]
    units: list[MergedUnit]

    @property
    def succeeded(self) -> bool:
        return all(status.succeeded for status in self.statuses.values())

    def output(self, agent_id: AgentId) -> str:
        """Text one agent produced, reassembled from its merged units."""
        parts = []
        for unit in self.units:
            if unit.agent_id != agent_id or unit.kind == UnitKind.STATUS:
                continue
            newline = unit.kind == UnitKind.LINE and unit.terminated_line
            parts.append(unit.text + "\n" if newline else unit.text)
        return "".join(parts)


class MuxSession:
    """Owns the channel, pool and merger task for a sequence of submissions."""

    def __init__(
        self,
        config: MuxConfig | None = None,
        *,
        strategy: MergeStrategy | str | None = None,
        history: HistorySink | None = None,
    ) -> None:
        self.config = config or MuxConfig()
        self.channel = create_channel(self.config.runner.channel_capacity)
        self.pool = AgentPool.from_config(self.config.runner, self.channel, history=history)
        self.merger = OutputMerger(self.channel, strategy or self.config.merge_strategy)
        self._merger_task: asyncio.Task[None] | None = None
        self._closed = False

    async def __aenter__(self) -> MuxSession:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def start(self) -> None:
        if self._merger_task is None:
            self._merger_task = asyncio.create_task(self.merger.run(), name="mux-merger")

    def subscribe(self, handler: UnitHandler) -> None:
        self.merger.subscribe(handler)

    def submit(self, template: str, cwd: str | None = None) -> SubmissionHandle:
        self.start()
        return self.pool.submit(template, cwd=cwd)

    async def wait(self, handle: SubmissionHandle) -> RunResult:
        """Wait for a submission's agents and for their output to be merged."""
        statuses = await self.pool.wait_for(handle.agent_ids)
        # Terminal messages are on the channel before the pool sees the transition
        await self.channel.join()
        ids = set(handle.agent_ids)
        units = [unit for unit in self.merger.view if unit.agent_id in ids]
        return RunResult(handle=handle, statuses=statuses, units=units)

    async def run(self, template: str, cwd: str | None = None) -> RunResult:
        """Submit ``template`` and wait for all of its agents.

        Raises:
            ConfigError: If the template cannot be expanded.
        """
        return await self.wait(self.submit(template, cwd=cwd))

    async def shutdown(self) -> dict[AgentId, AgentStatus]:
        return await self.pool.shutdown_all()

    async def close(self) -> None:
        """Shut the pool down, drain the channel and stop the merger."""
        if self._closed:
            return
        self._closed = True
        await self.pool.shutdown_all()
        if self._merger_task is None:
            return
        await self.merger.close()
        try:
            await self._merger_task
        except Exception:
            logger.exception("Merger task failed")
