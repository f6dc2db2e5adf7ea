"""Integration tests for Agent: real shell commands under ptys."""

import asyncio
import errno
import os
import time

import pytest

from mux.core import agent as agent_module
from mux.core.agent import Agent
from mux.core.cancellation import CancellationToken
from mux.core.merger import create_channel
from mux.core.models import AgentStatus, CommandInstance, StatusKind, StreamTag


def _agent(command, channel, tmp_path, **kwargs):
    return Agent(1, CommandInstance.shell(command, str(tmp_path)), channel, **kwargs)


def _drain(channel):
    messages = []
    while not channel.empty():
        messages.append(channel.get_nowait())
    return messages


def _text(messages, stream):
    return b"".join(m.payload for m in messages if m.stream == stream).decode()


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            # Reaped-later zombies count as gone
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return False


async def _collect_until(channel, needle, collected, timeout=10.0):
    """Consume messages into ``collected`` until ``needle`` appears in stdout."""
    deadline = time.monotonic() + timeout
    while needle not in _text(collected, StreamTag.STDOUT):
        remaining = deadline - time.monotonic()
        assert remaining > 0, f"timed out waiting for {needle!r}"
        collected.append(await asyncio.wait_for(channel.get(), remaining))


# ---------------------------------------------------------------------------
# Normal completion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_echo_completes_with_output(tmp_path):
    channel = create_channel(1024)
    agent = _agent("echo hello", channel, tmp_path)

    status = await agent.run()
    messages = _drain(channel)

    assert status == AgentStatus.completed(0)
    assert agent.exit_code == 0
    assert agent.pid is not None
    assert not agent.is_alive
    assert "hello" in _text(messages, StreamTag.STDOUT)
    assert [m.seq for m in messages] == list(range(len(messages)))
    assert messages[0].status == AgentStatus.running()
    assert messages[-1].status == status
    assert sum(1 for m in messages if m.is_terminal) == 1


@pytest.mark.asyncio
async def test_nonzero_exit_is_completed_with_code(tmp_path):
    channel = create_channel(1024)
    status = await _agent("exit 3", channel, tmp_path).run()
    assert status == AgentStatus.completed(3)
    assert status.describe() == "exited with code 3"


@pytest.mark.asyncio
async def test_stderr_is_tagged_separately(tmp_path):
    channel = create_channel(1024)
    await _agent("echo out; echo oops >&2", channel, tmp_path).run()
    messages = _drain(channel)
    assert "oops" in _text(messages, StreamTag.STDERR)
    assert "oops" not in _text(messages, StreamTag.STDOUT)
    assert "out" in _text(messages, StreamTag.STDOUT)


@pytest.mark.asyncio
async def test_child_sees_a_terminal(tmp_path):
    channel = create_channel(1024)
    command = "test -t 0 && test -t 1 && echo is-tty; test -t 2 && echo err-tty"
    await _agent(command, channel, tmp_path).run()
    stdout = _text(_drain(channel), StreamTag.STDOUT)
    assert "is-tty" in stdout
    assert "err-tty" in stdout


@pytest.mark.asyncio
async def test_pty_size_applied(tmp_path):
    channel = create_channel(1024)
    await _agent("stty size", channel, tmp_path, pty_size=(100, 40)).run()
    assert "40 100" in _text(_drain(channel), StreamTag.STDOUT)


@pytest.mark.asyncio
async def test_resize_reaches_running_child(tmp_path):
    channel = create_channel(1024)
    agent = _agent("echo ready; sleep 0.5; stty size", channel, tmp_path, pty_size=(80, 24))
    task = asyncio.create_task(agent.run())
    collected = []
    await _collect_until(channel, "ready", collected)
    agent.resize(120, 50)
    await asyncio.wait_for(task, timeout=10)
    collected.extend(_drain(channel))
    assert "50 120" in _text(collected, StreamTag.STDOUT)


@pytest.mark.asyncio
async def test_ordered_output_under_backpressure(tmp_path):
    channel = create_channel(2)
    agent = _agent("i=1; while [ $i -le 300 ]; do echo line$i; i=$((i+1)); done", channel, tmp_path)
    task = asyncio.create_task(agent.run())
    messages = []
    while not messages or not messages[-1].is_terminal:
        messages.append(await asyncio.wait_for(channel.get(), 10))
        await asyncio.sleep(0)
    assert await task == AgentStatus.completed(0)

    assert [m.seq for m in messages] == list(range(len(messages)))
    lines = [l.strip() for l in _text(messages, StreamTag.STDOUT).splitlines() if l.strip()]
    assert lines == [f"line{i}" for i in range(1, 301)]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_spawn_failure_is_failed_status(tmp_path):
    channel = create_channel(1024)
    command = CommandInstance.shell("echo hi", str(tmp_path / "missing"))
    agent = Agent(7, command, channel)

    status = await agent.run()

    assert status.kind == StatusKind.FAILED
    assert "Failed to spawn" in status.cause
    assert agent.pid is None
    messages = _drain(channel)
    assert [m.status for m in messages] == [status]


@pytest.mark.asyncio
async def test_missing_shell_is_failed_status(tmp_path):
    channel = create_channel(1024)
    command = CommandInstance.shell("echo hi", str(tmp_path), shell="/nonexistent/shell")
    status = await Agent(1, command, channel).run()
    assert status.kind == StatusKind.FAILED


@pytest.mark.asyncio
async def test_terminal_status_is_final(tmp_path):
    channel = create_channel(1024)
    agent = _agent("true", channel, tmp_path)
    await agent.run()
    await agent.ensure_terminal(AgentStatus.terminated())
    assert agent.status == AgentStatus.completed(0)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_before_start_never_spawns(tmp_path):
    channel = create_channel(1024)
    token = CancellationToken()
    token.cancel("test")
    agent = _agent("echo never", channel, tmp_path, token=token)

    assert await agent.run() == AgentStatus.terminated()
    assert agent.pid is None
    assert "never" not in _text(_drain(channel), StreamTag.STDOUT)


@pytest.mark.asyncio
async def test_cancel_running_command_within_grace(tmp_path):
    channel = create_channel(1024)
    agent = _agent("echo ready; sleep 30", channel, tmp_path, grace_period=1.0, kill_margin=1.0)
    task = asyncio.create_task(agent.run())
    await _collect_until(channel, "ready", [])

    started = time.monotonic()
    agent.cancel("test")
    status = await asyncio.wait_for(task, timeout=10)
    elapsed = time.monotonic() - started

    assert status == AgentStatus.terminated()
    assert elapsed < 1.0 + 1.0 + 0.5
    assert not agent.force_killed
    assert not _pid_alive(agent.pid)


@pytest.mark.asyncio
async def test_cancel_escalates_to_sigkill(tmp_path):
    channel = create_channel(1024)
    agent = _agent(
        "trap '' TERM; echo ready; sleep 30", channel, tmp_path, grace_period=0.5, kill_margin=1.0
    )
    task = asyncio.create_task(agent.run())
    await _collect_until(channel, "ready", [])

    started = time.monotonic()
    agent.cancel("test")
    status = await asyncio.wait_for(task, timeout=10)
    elapsed = time.monotonic() - started

    assert status == AgentStatus.terminated()
    assert agent.force_killed
    assert elapsed < 0.5 + 1.0 + 0.5
    assert not _pid_alive(agent.pid)


@pytest.mark.asyncio
async def test_cancel_kills_background_children(tmp_path):
    channel = create_channel(1024)
    agent = _agent("sleep 30 & echo bg=$!; echo ready; wait", channel, tmp_path, grace_period=1.0)
    task = asyncio.create_task(agent.run())
    collected = []
    await _collect_until(channel, "ready", collected)
    stdout = _text(collected, StreamTag.STDOUT)
    background_pid = int(stdout.split("bg=")[1].split()[0])

    agent.cancel("test")
    await asyncio.wait_for(task, timeout=10)

    deadline = time.monotonic() + 2
    while _pid_alive(background_pid) and time.monotonic() < deadline:
        await asyncio.sleep(0.05)
    assert not _pid_alive(background_pid)


# ---------------------------------------------------------------------------
# Read failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_read_error_stops_command_and_keeps_output(tmp_path, monkeypatch):
    real_read = os.read

    def failing_read(fd, size):
        data = real_read(fd, size)
        if b"second" in data:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF))
        return data

    monkeypatch.setattr(agent_module.os, "read", failing_read)
    channel = create_channel(1024)
    agent = _agent(
        "echo first; sleep 0.3; echo second; sleep 30",
        channel,
        tmp_path,
        grace_period=0.5,
        kill_margin=0.5,
    )
    task = asyncio.create_task(agent.run())
    collected = []
    await _collect_until(channel, "first", collected)

    started = time.monotonic()
    status = await asyncio.wait_for(task, timeout=10)
    elapsed = time.monotonic() - started
    collected.extend(_drain(channel))

    assert status.kind == StatusKind.FAILED
    assert elapsed < 0.3 + 0.5 + 0.5 + 0.5
    assert "first" in _text(collected, StreamTag.STDOUT)
    assert "second" not in _text(collected, StreamTag.STDOUT)
    assert collected[-1].status == status
    assert not _pid_alive(agent.pid)
