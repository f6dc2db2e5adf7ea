"""Agent: runs one command under a pseudo-terminal and streams its output.

The child runs in its own session with a pty as controlling terminal and
stdin/stdout, so it sees an interactive terminal and keeps emitting colors and
cursor control. stderr gets a second pty so the two streams stay distinct
while both remain terminals.

Every chunk read from a pty master becomes one ``OutputMessage`` carrying the
agent's next sequence number. Messages are put on a bounded queue; a full
queue suspends the reader, which in turn lets the child block on its own
output once the kernel buffer fills.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import shutil
import signal
import struct
import subprocess
import termios
import time
from collections.abc import Callable
from datetime import datetime, timezone

from ..errors import RuntimeReadError, ShutdownTimeout, SpawnError
from .cancellation import CancellationToken
from .models import AgentId, AgentStatus, CommandInstance, OutputMessage, StreamTag

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
DEFAULT_GRACE_PERIOD = 3.0
DEFAULT_KILL_MARGIN = 2.0

StatusCallback = Callable[["Agent"], None]


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is the primary pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def default_pty_size() -> tuple[int, int]:
    """Return ``(cols, rows)`` of the controlling terminal, falling back to 80x24."""
    size = shutil.get_terminal_size((80, 24))
    return size.columns, size.lines


class Agent:
    """Exclusive supervisor of one child process and its pty output.

    Lifecycle: ``STARTING -> RUNNING -> COMPLETED | FAILED | TERMINATED``.
    Terminal states are final. ``run()`` drives the whole lifecycle and
    always ends in a terminal state; it never raises for child failures.
    """

    def __init__(
        self,
        agent_id: AgentId,
        command: CommandInstance,
        channel: asyncio.Queue[OutputMessage | None],
        *,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        kill_margin: float = DEFAULT_KILL_MARGIN,
        token: CancellationToken | None = None,
        on_status: StatusCallback | None = None,
        pty_size: tuple[int, int] | None = None,
    ) -> None:
        self.id = agent_id
        self.command = command
        self.token = token or CancellationToken()
        self.status = AgentStatus.starting()
        self.start_time: datetime | None = None
        self.exit_code: int | None = None
        self.force_killed = False
        self.chunk_count = 0

        self._channel = channel
        self._grace_period = grace_period
        self._kill_margin = kill_margin
        self._on_status = on_status
        self._pty_size = pty_size or default_pty_size()
        self._seq = 0
        self._emit_lock = asyncio.Lock()
        self._started_monotonic: float | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._masters: dict[StreamTag, int] = {}

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def __repr__(self) -> str:
        return f"Agent(id={self.id}, command={self.command.command!r}, status={self.status.kind.value})"

    # ------------------------------------------------------------------
    # Status and message plumbing
    # ------------------------------------------------------------------

    async def _emit(self, build: Callable[[int], OutputMessage]) -> None:
        # Sequence assignment and the put share one lock so an agent's two
        # pumps can never reach the channel out of sequence order.
        async with self._emit_lock:
            seq = self._seq
            self._seq += 1
            await self._channel.put(build(seq))

    async def _set_status(self, status: AgentStatus) -> None:
        if self.status.is_terminal:
            raise RuntimeError(
                f"Agent #{self.id} is already {self.status.kind.value}; "
                f"cannot move to {status.kind.value}"
            )
        self.status = status
        await self._emit(
            lambda seq: OutputMessage.status_change(self.id, seq, status, self.command.label)
        )
        # The pool hears of a transition only once its message is on the channel
        if self._on_status:
            self._on_status(self)

    async def drop(self) -> None:
        """Terminate an agent that was never started (queued and cancelled)."""
        self.token.cancel("dropped")
        await self._set_status(AgentStatus.terminated())

    async def ensure_terminal(self, status: AgentStatus) -> None:
        """Force a terminal status if ``run()`` never reached one."""
        if not self.status.is_terminal:
            await self._set_status(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> AgentStatus:
        """Start the child, pump its output, and return the terminal status."""
        if self.token.is_cancelled():
            await self.drop()
            return self.status

        if not await self.start():
            return self.status

        pumps = [
            asyncio.create_task(self._pump(stream, fd), name=f"mux-agent-{self.id}-{stream.value}")
            for stream, fd in self._masters.items()
        ]
        canceller = asyncio.create_task(self._watch_cancellation(pumps))
        assert self._process is not None
        waiter = asyncio.ensure_future(self._process.wait())
        read_error: RuntimeReadError | None = None
        try:
            # The other pty sees no EOF while the child lives
            done, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_EXCEPTION)
            for pump in done:
                if pump.cancelled():
                    continue
                exc = pump.exception()
                if isinstance(exc, RuntimeReadError) and read_error is None:
                    read_error = exc
                elif exc is not None:
                    raise exc

            timeout = None
            if read_error is not None:
                for pump in pending:
                    pump.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                logger.error("%s; stopping command: %s", read_error, self.command.command)
                await self._escalate()
                self._sweep_group()
                timeout = self._kill_margin

            # A finished canceller means escalation is over, reaped or not.
            await asyncio.wait(
                {waiter, canceller}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            returncode = waiter.result() if waiter.done() else None
        finally:
            for task in (waiter, canceller, *pumps):
                task.cancel()
            await asyncio.gather(waiter, canceller, *pumps, return_exceptions=True)
            if self.token.is_cancelled():
                self._sweep_group()
            self._close_masters()

        if returncode is not None:
            self.exit_code = returncode if returncode >= 0 else 128 - returncode
        elapsed = time.monotonic() - (self._started_monotonic or time.monotonic())

        if self.token.is_cancelled():
            final = AgentStatus.terminated()
        elif read_error is not None:
            final = AgentStatus.failed(str(read_error))
        elif self.exit_code is None:
            final = AgentStatus.failed("exit status unavailable")
        else:
            final = AgentStatus.completed(self.exit_code)

        logger.info(
            "Agent #%d finished: %s (%s, %d chunks, %.2fs)",
            self.id,
            self.command.command,
            final.describe(),
            self.chunk_count,
            elapsed,
        )
        await self._set_status(final)
        return final

    async def start(self) -> bool:
        """Allocate ptys and spawn the child; return False if spawning failed."""
        slaves: list[int] = []
        try:
            cols, rows = self._pty_size
            for stream in (StreamTag.STDOUT, StreamTag.STDERR):
                master, slave = os.openpty()
                _set_window_size(slave, cols, rows)
                os.set_blocking(master, False)
                self._masters[stream] = master
                slaves.append(slave)

            env = dict(os.environ)
            env.setdefault("TERM", "xterm-256color")
            self._process = await asyncio.create_subprocess_exec(
                *self.command.argv,
                stdin=slaves[0],
                stdout=slaves[0],
                stderr=slaves[1],
                cwd=self.command.cwd,
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            self._close_masters()
            error = SpawnError(self.command.command, str(exc))
            logger.warning("Agent #%d: %s", self.id, error)
            await self._set_status(AgentStatus.failed(str(error)))
            return False
        finally:
            # The child holds its own copies; EOF on the masters requires ours closed.
            for fd in slaves:
                os.close(fd)

        self.start_time = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()
        logger.info("Agent #%d started (pid %d): %s", self.id, self._process.pid, self.command.command)
        await self._set_status(AgentStatus.running())
        return True

    async def _pump(self, stream: StreamTag, fd: int) -> None:
        while True:
            chunk = await self._read_chunk(fd)
            if not chunk:
                return
            self.chunk_count += 1
            await self._emit(
                lambda seq: OutputMessage.output(self.id, seq, stream, chunk, self.command.label)
            )

    async def _read_chunk(self, fd: int) -> bytes:
        """Read up to one chunk; ``b""`` means EOF (EIO once every slave is closed)."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                return os.read(fd, READ_CHUNK_SIZE)
            except BlockingIOError:
                pass
            except OSError as exc:
                if exc.errno == errno.EIO:
                    return b""
                raise RuntimeReadError(self.id, exc.errno, str(exc)) from exc

            ready = loop.create_future()
            loop.add_reader(fd, lambda: ready.done() or ready.set_result(None))
            try:
                await ready
            finally:
                loop.remove_reader(fd)

    def _close_masters(self) -> None:
        for fd in self._masters.values():
            try:
                os.close(fd)
            except OSError:
                pass
        self._masters.clear()

    # ------------------------------------------------------------------
    # Cancellation and termination
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "requested") -> None:
        """Request cancellation; escalation runs inside ``run()``."""
        self.token.cancel(reason)

    async def _watch_cancellation(self, pumps: list[asyncio.Task[None]]) -> None:
        reason = await self.token.wait()
        logger.info("Agent #%d cancelled (%s)", self.id, reason)
        await self._escalate()
        self._sweep_group()
        # Stragglers outside the process group may still hold a slave open.
        _, pending = await asyncio.wait(pumps, timeout=self._kill_margin)
        for pump in pending:
            pump.cancel()

    async def _escalate(self) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return

        self._signal_group(signal.SIGTERM)
        if await self._wait_exit(self._grace_period):
            return

        logger.warning(
            "Agent #%d still running %.1fs after SIGTERM; escalating to SIGKILL (pid %d)",
            self.id,
            self._grace_period,
            proc.pid,
        )
        self.force_killed = True
        self._signal_group(signal.SIGKILL)
        if not await self._wait_exit(self._kill_margin):
            logger.error("Agent #%d: %s", self.id, ShutdownTimeout(proc.pid, self._kill_margin))

    async def _wait_exit(self, timeout: float) -> bool:
        assert self._process is not None
        try:
            await asyncio.wait_for(self._process.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return False
        return True

    def _signal_group(self, sig: signal.Signals) -> bool:
        """Send a signal to the child's process group (best effort)."""
        if self._process is None:
            return False
        try:
            os.killpg(self._process.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except OSError as exc:
            logger.warning("Agent #%d: failed to send %s: %s", self.id, sig.name, exc)
            return False

    def _sweep_group(self) -> None:
        # Leader may be gone while background members of its group live on.
        self._signal_group(signal.SIGKILL)

    def force_kill(self) -> None:
        """SIGKILL the whole process group immediately."""
        if self._process is None:
            return
        self.force_killed = True
        self._signal_group(signal.SIGKILL)

    async def wait_process(self) -> int | None:
        """Wait for the child to be reaped; None if it was never spawned."""
        if self._process is None:
            return None
        return await self._process.wait()

    # ------------------------------------------------------------------
    # Terminal control
    # ------------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> None:
        """Propagate a terminal resize to the child's ptys."""
        self._pty_size = (cols, rows)
        for stream, fd in list(self._masters.items()):
            try:
                _set_window_size(fd, cols, rows)
            except OSError as exc:
                logger.warning("Failed to resize %s pty for agent #%d: %s", stream.value, self.id, exc)
