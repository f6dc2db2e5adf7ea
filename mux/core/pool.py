"""Agent pool: admission control and lifecycle supervision."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

from ..errors import MuxError
from .agent import DEFAULT_GRACE_PERIOD, DEFAULT_KILL_MARGIN, Agent
from .expander import expand_template
from .models import (
    AgentId,
    AgentStatus,
    CommandInstance,
    OutputMessage,
    StatusKind,
    SubmissionHandle,
)
from .protocol import HistorySink, StatusListener

if TYPE_CHECKING:
    from ..config import RunnerConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 64
DEFAULT_SHUTDOWN_TIMEOUT = 10.0


@dataclass(frozen=True)
class AgentInfo:
    """Read-only view of one tracked agent."""

    agent_id: AgentId
    command: str
    label: str
    status: AgentStatus
    pid: int | None
    start_time: datetime | None
    exit_code: int | None
    force_killed: bool


class AgentPool:
    """Admits, tracks and bounds concurrently running agents.

    The pool is the only writer of its agent map and running set. At most
    ``max_concurrent`` agents run at once; the rest wait in a FIFO queue and
    are admitted one-for-one as running agents reach a terminal state.
    Agent failures surface as status transitions and never propagate out of
    the pool.
    """

    def __init__(
        self,
        channel: asyncio.Queue[OutputMessage | None],
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        kill_margin: float = DEFAULT_KILL_MARGIN,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        shell: str = "sh",
        history: HistorySink | None = None,
        pty_size: tuple[int, int] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._channel = channel
        self._max_concurrent = max_concurrent
        self._grace_period = grace_period
        self._kill_margin = kill_margin
        self._shutdown_timeout = shutdown_timeout
        self._shell = shell
        self._history = history
        self._pty_size = pty_size

        self._agents: dict[AgentId, Agent] = {}
        self._queue: deque[Agent] = deque()
        self._running: set[AgentId] = set()
        self._tasks: dict[AgentId, asyncio.Task[AgentStatus]] = {}
        self._listeners: list[StatusListener] = []
        self._idle = asyncio.Event()
        self._idle.set()
        self._transition = asyncio.Event()
        self._next_id = 1
        self._next_submission = 1
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: RunnerConfig,
        channel: asyncio.Queue[OutputMessage | None],
        history: HistorySink | None = None,
    ) -> AgentPool:
        return cls(
            channel,
            max_concurrent=config.max_concurrent,
            grace_period=config.grace_period,
            kill_margin=config.kill_margin,
            shutdown_timeout=config.shutdown_timeout,
            shell=config.shell,
            history=history,
        )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def finished_count(self) -> int:
        return sum(1 for a in self._agents.values() if a.status.is_terminal)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def status_snapshot(self) -> Mapping[AgentId, AgentStatus]:
        """Return a read-only snapshot of every tracked agent's status."""
        return MappingProxyType({aid: agent.status for aid, agent in self._agents.items()})

    status = status_snapshot

    def agent_info(self, agent_id: AgentId) -> AgentInfo | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        return AgentInfo(
            agent_id=agent.id,
            command=agent.command.command,
            label=agent.command.label,
            status=agent.status,
            pid=agent.pid,
            start_time=agent.start_time,
            exit_code=agent.exit_code,
            force_killed=agent.force_killed,
        )

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def wait_idle(self) -> None:
        """Block until no agent is running or queued."""
        await self._idle.wait()

    async def wait_for(self, agent_ids: Sequence[AgentId]) -> dict[AgentId, AgentStatus]:
        """Block until every listed agent is terminal; return their statuses."""
        while not all(self._agents[aid].status.is_terminal for aid in agent_ids):
            await self._transition.wait()
        return {aid: self._agents[aid].status for aid in agent_ids}

    # ------------------------------------------------------------------
    # Submission and admission
    # ------------------------------------------------------------------

    def submit(
        self,
        submission: str | Sequence[CommandInstance],
        cwd: str | None = None,
    ) -> SubmissionHandle:
        """Submit a template (or pre-expanded commands) as one atomic unit.

        Raises:
            ConfigError: If the template cannot be expanded. Nothing is started.
            MuxError: If the pool has been shut down.
        """
        if self._closed:
            raise MuxError("Pool is shut down; no new submissions accepted")

        if isinstance(submission, str):
            commands = expand_template(submission, cwd=cwd, shell=self._shell)
        else:
            commands = list(submission)

        agents = [self._create_agent(command) for command in commands]
        handle = SubmissionHandle(
            submission_id=self._next_submission,
            agent_ids=tuple(a.id for a in agents),
            commands=tuple(commands),
        )
        self._next_submission += 1

        if agents:
            self._idle.clear()
        self._queue.extend(agents)
        logger.info(
            "Submission %d: %d command(s), %d running, %d queued before admission",
            handle.submission_id,
            len(agents),
            self.running_count,
            self.queued_count,
        )
        self._admit()
        self._notify()
        return handle

    def _create_agent(self, command: CommandInstance) -> Agent:
        agent_id = self._next_id
        self._next_id += 1
        agent = Agent(
            agent_id,
            command,
            self._channel,
            grace_period=self._grace_period,
            kill_margin=self._kill_margin,
            on_status=self._on_agent_status,
            pty_size=self._pty_size,
        )
        self._agents[agent_id] = agent
        return agent

    def _admit(self) -> None:
        while self._queue and not self._closed and len(self._running) < self._max_concurrent:
            agent = self._queue.popleft()
            self._running.add(agent.id)
            if self._history is not None:
                try:
                    self._history.record(agent.command.command)
                except Exception as exc:
                    logger.warning("History record skipped for agent #%d: %s", agent.id, exc)
            self._tasks[agent.id] = asyncio.create_task(
                self._run_agent(agent), name=f"mux-agent-{agent.id}"
            )

    async def _run_agent(self, agent: Agent) -> AgentStatus:
        try:
            return await agent.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Agent #%d crashed", agent.id)
            agent.force_kill()
            await agent.ensure_terminal(AgentStatus.failed(f"internal error: {exc}"))
            return agent.status

    def _on_agent_status(self, agent: Agent) -> None:
        if agent.status.is_terminal:
            self._running.discard(agent.id)
            self._tasks.pop(agent.id, None)
            self._admit()
            if not self._running and not self._queue:
                self._idle.set()
        self._transition.set()
        self._transition = asyncio.Event()
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status_snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Status listener failed")

    # ------------------------------------------------------------------
    # Cancellation and shutdown
    # ------------------------------------------------------------------

    async def cancel_agent(self, agent_id: AgentId, *, wait: bool = True) -> bool:
        """Cancel one agent. Queued agents are dropped without ever starting.

        Returns False if the id is unknown or the agent is already terminal.
        """
        agent = self._agents.get(agent_id)
        if agent is None or agent.status.is_terminal:
            return False

        if agent in self._queue:
            self._queue.remove(agent)
            logger.info("Agent #%d dropped from queue", agent_id)
            await agent.drop()
            return True

        agent.cancel("cancel_agent")
        task = self._tasks.get(agent_id)
        if wait and task is not None:
            await asyncio.wait({task})
        return True

    async def shutdown_all(self) -> dict[AgentId, AgentStatus]:
        """Cancel every agent and return the final status map.

        Running agents are cancelled concurrently and given
        ``shutdown_timeout`` to finish their own escalation. Anything still
        alive after that is SIGKILLed and reaped before returning, so no
        process started by this pool outlives the call.
        """
        self._closed = True

        queued = list(self._queue)
        self._queue.clear()
        for agent in queued:
            await agent.drop()

        active = {aid: task for aid, task in self._tasks.items() if not task.done()}
        for aid in active:
            self._agents[aid].cancel("shutdown")

        if active:
            _, pending = await asyncio.wait(active.values(), timeout=self._shutdown_timeout)
            if pending:
                logger.warning(
                    "%d agent(s) still active %.1fs into shutdown; forcing kill",
                    len(pending),
                    self._shutdown_timeout,
                )
            for aid in active:
                agent = self._agents[aid]
                if agent.is_alive:
                    agent.force_kill()
                    await agent.wait_process()
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for aid in active:
                await self._agents[aid].ensure_terminal(AgentStatus.terminated())

        self._running.clear()
        self._idle.set()
        counts = self._count_by_kind()
        logger.info("Pool shut down: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
        return dict(self.status_snapshot())

    def _count_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for agent in self._agents.values():
            counts[agent.status.kind.value] = counts.get(agent.status.kind.value, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Terminal control
    # ------------------------------------------------------------------

    def resize_all(self, cols: int, rows: int) -> None:
        """Forward a terminal resize to every running agent."""
        self._pty_size = (cols, rows)
        for aid in list(self._running):
            self._agents[aid].resize(cols, rows)

    def running_ids(self) -> list[AgentId]:
        return sorted(aid for aid, a in self._agents.items() if a.status.kind == StatusKind.RUNNING)
