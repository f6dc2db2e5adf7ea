"""Integration tests for AgentPool and MuxSession."""

import asyncio
import os

import pytest

from mux.config import MuxConfig
from mux.core.merger import create_channel
from mux.core.models import AgentStatus, CommandInstance, MergeStrategy, StatusKind, UnitKind
from mux.core.pool import AgentPool
from mux.core.protocol import InMemoryHistory
from mux.errors import ConfigError, MuxError
from mux.session import MuxSession


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return False


async def _wait_until(predicate, timeout=10.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)


def _pool(**kwargs):
    # Large channel so tests without a merger never block on puts
    return AgentPool(create_channel(4096), **kwargs)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_running_never_exceeds_cap_and_counts_are_conserved(tmp_path):
    pool = _pool(max_concurrent=2)
    observed = []

    def listener(snapshot):
        running = sum(1 for s in snapshot.values() if s.kind == StatusKind.RUNNING)
        total = pool.running_count + pool.queued_count + pool.finished_count
        observed.append((running, pool.running_count, total, len(snapshot)))

    pool.add_status_listener(listener)
    handle = pool.submit("[n=1-5] sleep 0.2", cwd=str(tmp_path))
    assert len(handle) == 5
    assert pool.running_count == 2
    assert pool.queued_count == 3

    await asyncio.wait_for(pool.wait_idle(), 15)

    assert observed
    assert max(r for r, _, _, _ in observed) <= 2
    assert max(c for _, c, _, _ in observed) <= 2
    assert all(total == n for _, _, total, n in observed)
    assert all(s == AgentStatus.completed(0) for s in pool.status_snapshot().values())
    assert pool.finished_count == 5
    # Finished agents hold no task
    assert pool._tasks == {}


@pytest.mark.asyncio
async def test_admission_is_fifo(tmp_path):
    history = InMemoryHistory()
    pool = _pool(max_concurrent=1, history=history)
    pool.submit("[n=1-4] echo {n}", cwd=str(tmp_path))
    await asyncio.wait_for(pool.wait_idle(), 15)

    assert history.commands == ["echo 1", "echo 2", "echo 3", "echo 4"]
    starts = [pool.agent_info(i).start_time for i in range(1, 5)]
    assert starts == sorted(starts)


@pytest.mark.asyncio
async def test_ids_unique_across_submissions(tmp_path):
    pool = _pool()
    first = pool.submit("[n=1-3] true", cwd=str(tmp_path))
    second = pool.submit("[n=1-2] true", cwd=str(tmp_path))
    assert first.agent_ids == (1, 2, 3)
    assert second.agent_ids == (4, 5)
    assert second.submission_id == first.submission_id + 1
    await asyncio.wait_for(pool.wait_idle(), 15)


@pytest.mark.asyncio
async def test_queued_agents_report_starting(tmp_path):
    pool = _pool(max_concurrent=1)
    pool.submit("[n=1-2] sleep 0.2", cwd=str(tmp_path))
    assert pool.status_snapshot()[2] == AgentStatus.starting()
    await asyncio.wait_for(pool.wait_idle(), 15)


@pytest.mark.asyncio
async def test_snapshot_is_read_only(tmp_path):
    pool = _pool()
    pool.submit("true", cwd=str(tmp_path))
    snapshot = pool.status_snapshot()
    with pytest.raises(TypeError):
        snapshot[1] = AgentStatus.terminated()  # type: ignore[index]
    await asyncio.wait_for(pool.wait_idle(), 15)


@pytest.mark.asyncio
async def test_bad_template_submits_nothing(tmp_path):
    pool = _pool()
    with pytest.raises(ConfigError):
        pool.submit("[n=1-2 echo {n}", cwd=str(tmp_path))
    assert dict(pool.status_snapshot()) == {}
    assert pool.running_count == 0


def test_max_concurrent_must_be_positive():
    with pytest.raises(ValueError):
        AgentPool(create_channel(), max_concurrent=0)


@pytest.mark.asyncio
async def test_spawn_failure_does_not_affect_siblings(tmp_path):
    pool = _pool()
    commands = [
        CommandInstance.shell("echo ok", str(tmp_path)),
        CommandInstance.shell("echo ok", str(tmp_path / "missing")),
    ]
    handle = pool.submit(commands)
    statuses = await asyncio.wait_for(pool.wait_for(handle.agent_ids), 15)
    assert statuses[1] == AgentStatus.completed(0)
    assert statuses[2].kind == StatusKind.FAILED


@pytest.mark.asyncio
async def test_failing_listener_and_history_do_not_break_pool(caplog, tmp_path):
    class BrokenHistory:
        def record(self, command):
            raise OSError("disk full")

    pool = _pool(history=BrokenHistory())
    pool.add_status_listener(lambda snapshot: 1 / 0)
    handle = pool.submit("echo fine", cwd=str(tmp_path))
    statuses = await asyncio.wait_for(pool.wait_for(handle.agent_ids), 15)
    assert statuses[1] == AgentStatus.completed(0)
    assert "History record skipped" in caplog.text
    assert "Status listener failed" in caplog.text


# ---------------------------------------------------------------------------
# Cancellation and shutdown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_queued_agent_never_runs(tmp_path):
    history = InMemoryHistory()
    pool = _pool(max_concurrent=1, history=history, grace_period=1.0)
    pool.submit("sleep 30", cwd=str(tmp_path))
    pool.submit("echo never", cwd=str(tmp_path))

    assert await pool.cancel_agent(2)
    assert pool.status_snapshot()[2] == AgentStatus.terminated()
    assert pool.agent_info(2).pid is None

    assert await pool.cancel_agent(1)
    await asyncio.wait_for(pool.wait_idle(), 10)
    assert pool.status_snapshot()[1] == AgentStatus.terminated()
    assert history.commands == ["sleep 30"]


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_agent(tmp_path):
    pool = _pool()
    assert not await pool.cancel_agent(99)
    handle = pool.submit("true", cwd=str(tmp_path))
    await asyncio.wait_for(pool.wait_for(handle.agent_ids), 15)
    assert not await pool.cancel_agent(1)


@pytest.mark.asyncio
async def test_shutdown_all_leaves_no_live_process(tmp_path):
    pool = _pool(max_concurrent=2, grace_period=1.0, kill_margin=1.0)
    pool.submit("[n=1-3] sleep 30", cwd=str(tmp_path))
    await _wait_until(lambda: len(pool.running_ids()) == 2)
    pids = [pool.agent_info(i).pid for i in pool.running_ids()]

    final = await asyncio.wait_for(pool.shutdown_all(), 15)

    assert set(final) == {1, 2, 3}
    assert all(status == AgentStatus.terminated() for status in final.values())
    assert pool.agent_info(3).pid is None
    assert not any(_pid_alive(pid) for pid in pids)
    assert pool.running_count == 0
    assert pool.is_closed
    with pytest.raises(MuxError):
        pool.submit("true", cwd=str(tmp_path))


@pytest.mark.asyncio
async def test_shutdown_forces_stubborn_processes(tmp_path):
    pool = _pool(grace_period=0.3, kill_margin=1.0)
    pool.submit("trap '' TERM; sleep 30", cwd=str(tmp_path))
    await _wait_until(lambda: pool.running_ids() == [1])
    await asyncio.sleep(0.2)
    pid = pool.agent_info(1).pid

    final = await asyncio.wait_for(pool.shutdown_all(), 15)

    assert final[1] == AgentStatus.terminated()
    assert pool.agent_info(1).force_killed
    assert not _pid_alive(pid)


# ---------------------------------------------------------------------------
# Sessions: pool + merger end to end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_two_echo_commands_interleaved(tmp_path):
    async with MuxSession(MuxConfig()) as session:
        result = await asyncio.wait_for(session.run("[x=A,B] echo {x}", cwd=str(tmp_path)), 15)

    assert result.handle.agent_ids == (1, 2)
    assert result.statuses == {1: AgentStatus.completed(0), 2: AgentStatus.completed(0)}
    assert result.succeeded
    assert result.output(1).strip() == "A"
    assert result.output(2).strip() == "B"

    for agent_id in (1, 2):
        units = [u for u in result.units if u.agent_id == agent_id]
        assert units[-1].kind == UnitKind.STATUS
        assert units[-1].status == AgentStatus.completed(0)
        output_index = next(u.index for u in units if u.kind == UnitKind.CHUNK)
        assert output_index < units[-1].index
    assert [u.index for u in result.units] == sorted(u.index for u in result.units)


@pytest.mark.asyncio
async def test_line_strategy_end_to_end(tmp_path):
    async with MuxSession(MuxConfig(), strategy=MergeStrategy.LINE) as session:
        result = await asyncio.wait_for(
            session.run("printf 'one\\ntwo\\nthree'", cwd=str(tmp_path)), 15
        )

    lines = [u for u in result.units if u.kind == UnitKind.LINE]
    assert [u.text for u in lines] == ["one", "two", "three"]
    assert [u.terminated_line for u in lines] == [True, True, False]


@pytest.mark.asyncio
async def test_grouped_strategy_end_to_end(tmp_path):
    config = MuxConfig()
    config.output.merge_strategy = "grouped"
    seen = []
    async with MuxSession(config) as session:
        session.subscribe(seen.append)
        result = await asyncio.wait_for(session.run("[n=1-3] echo out{n}", cwd=str(tmp_path)), 15)

    blocks = [u for u in result.units if u.kind == UnitKind.BLOCK]
    assert sorted(u.agent_id for u in blocks) == [1, 2, 3]
    for block in blocks:
        assert f"out{block.agent_id}" in block.text
        assert block.status == AgentStatus.completed(0)
    assert seen == blocks


@pytest.mark.asyncio
async def test_failed_commands_reported(tmp_path):
    async with MuxSession() as session:
        result = await asyncio.wait_for(session.run("[c=0,4] exit {c}", cwd=str(tmp_path)), 15)
    assert result.statuses[1] == AgentStatus.completed(0)
    assert result.statuses[2] == AgentStatus.completed(4)
    assert not result.succeeded


@pytest.mark.asyncio
async def test_session_close_terminates_running_agents(tmp_path):
    config = MuxConfig()
    config.runner.grace_period = 1.0
    session = MuxSession(config)
    handle = session.submit("[n=1-2] sleep 30", cwd=str(tmp_path))
    await _wait_until(lambda: len(session.pool.running_ids()) == 2)
    pids = [session.pool.agent_info(i).pid for i in handle.agent_ids]

    await asyncio.wait_for(session.close(), 15)

    assert all(s == AgentStatus.terminated() for s in session.pool.status_snapshot().values())
    assert not any(_pid_alive(pid) for pid in pids)
    assert session.merger.view[-1].kind == UnitKind.STATUS
