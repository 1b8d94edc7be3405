from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import psutil
import pytest

from flock.devserver import (
    DevServerConfig,
    DevServerState,
    DevServerSupervisor,
    LogBuffer,
)
from flock.errors import AlreadyRunning, NotConfigured, PreRunFailed


async def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


def test_log_buffer_evicts_oldest_first() -> None:
    buffer = LogBuffer(3)
    for index in range(5):
        buffer.append(f"line {index}")

    assert len(buffer) == 3
    assert buffer.snapshot() == ("line 2", "line 3", "line 4")
    assert buffer.capacity == 3


def test_log_buffer_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        LogBuffer(0)


def test_second_start_reports_already_running(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> None:
        status = await supervisor.start("a1", "sleep 30", tmp_path, port=3000)
        assert status.state is DevServerState.RUNNING
        assert status.pid is not None and status.port == 3000
        with pytest.raises(AlreadyRunning):
            await supervisor.start("a1", "sleep 30", tmp_path)
        await supervisor.stop("a1")

    asyncio.run(scenario())

    assert supervisor.status("a1").state is DevServerState.STOPPED


def test_stop_is_idempotent(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> tuple[tuple[str, ...], tuple[str, ...]]:
        await supervisor.stop("unknown")
        await supervisor.start("a1", "sleep 30", tmp_path)
        await supervisor.stop("a1")
        before = supervisor.logs("a1")
        await supervisor.stop("a1")
        return before, supervisor.logs("a1")

    before, after = asyncio.run(scenario())

    assert before == after
    assert before[-2:] == ("Stopping dev server...", "Dev server stopped")
    assert supervisor.get("unknown") is None


def test_pre_run_failure_marks_failed(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor()

    async def scenario() -> None:
        with pytest.raises(PreRunFailed) as excinfo:
            await supervisor.start(
                "a1",
                "sleep 30",
                tmp_path,
                pre_run_commands=["echo preparing", "exit 3", "echo never"],
            )
        assert excinfo.value.code == 3
        assert excinfo.value.command == "exit 3"

    asyncio.run(scenario())

    status = supervisor.status("a1")
    assert status.state is DevServerState.FAILED
    assert "exit 3" in (status.reason or "")
    logs = supervisor.logs("a1")
    assert "preparing" in logs
    assert "$ echo never" not in logs


def test_missing_command_is_not_configured(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor()

    with pytest.raises(NotConfigured):
        asyncio.run(supervisor.start("a1", "   ", tmp_path))

    assert supervisor.status("a1").state is DevServerState.STOPPED


def test_output_is_captured_with_stderr_prefix(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> tuple[str, ...]:
        await supervisor.start("a1", "echo hello; echo oops 1>&2; sleep 30", tmp_path)
        await _wait_for(lambda: {"hello", "[stderr] oops"} <= set(supervisor.logs("a1")))
        logs = supervisor.logs("a1")
        await supervisor.stop("a1")
        return logs

    logs = asyncio.run(scenario())

    assert logs[0] == "$ echo hello; echo oops 1>&2; sleep 30"


def test_natural_exit_is_recorded(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor()

    async def scenario() -> None:
        await supervisor.start("ok", "true", tmp_path)
        await supervisor.start("bad", "exit 4", tmp_path)
        await _wait_for(lambda: not supervisor.status("ok").is_active)
        await _wait_for(lambda: not supervisor.status("bad").is_active)

    asyncio.run(scenario())

    assert supervisor.status("ok").state is DevServerState.STOPPED
    bad = supervisor.status("bad")
    assert bad.state is DevServerState.FAILED
    assert bad.reason == "Exited with code 4"
    assert supervisor.running_servers() == []


def test_stop_kills_whole_process_tree(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> list[psutil.Process]:
        status = await supervisor.start("a1", "sleep 60 & sleep 60 & wait", tmp_path)
        parent = psutil.Process(status.pid)
        await _wait_for(lambda: len(parent.children(recursive=True)) >= 2)
        children = parent.children(recursive=True)
        await supervisor.stop("a1")
        return children

    children = asyncio.run(scenario())

    for child in children:
        try:
            assert not child.is_running() or child.status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            pass


def test_concurrent_servers_are_independent(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> None:
        first, second = await asyncio.gather(
            supervisor.start("a1", "echo serving-a; sleep 30", tmp_path, port=3001),
            supervisor.start("a2", "echo serving-b; sleep 30", tmp_path, port=3002),
        )
        assert first.state is DevServerState.RUNNING and first.port == 3001
        assert second.state is DevServerState.RUNNING and second.port == 3002
        assert first.pid != second.pid
        await _wait_for(lambda: "serving-b" in supervisor.logs("a2"))

        logs_b = supervisor.logs("a2")
        await supervisor.stop("a1")

        assert supervisor.status("a1").state is DevServerState.STOPPED
        assert supervisor.status("a2") == second
        assert supervisor.logs("a2") == logs_b
        assert supervisor.running_servers() == [("a2", second.pid, 3002)]
        assert await supervisor.stop_all() == {}

    asyncio.run(scenario())

    assert supervisor.running_servers() == []


def test_restart_reuses_last_launch(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> tuple[int | None, int | None]:
        first = await supervisor.start("a1", "sleep 30", tmp_path, port=4000)
        second = await supervisor.restart("a1")
        assert second.state is DevServerState.RUNNING
        assert second.port == 4000
        await supervisor.stop("a1")
        return first.pid, second.pid

    first_pid, second_pid = asyncio.run(scenario())

    assert first_pid != second_pid


def test_restart_without_launch_is_not_configured() -> None:
    supervisor = DevServerSupervisor()

    with pytest.raises(NotConfigured):
        asyncio.run(supervisor.restart("a1"))


def test_configs_round_trip_and_forget() -> None:
    supervisor = DevServerSupervisor()
    supervisor.configure("a1", DevServerConfig(command="npm run dev", run_before=["npm ci"], port=5173))

    restored = DevServerSupervisor()
    restored.restore(supervisor.serialize())

    assert restored.config_for("a1") == DevServerConfig(command="npm run dev", run_before=["npm ci"], port=5173)
    restored.forget("a1")
    assert restored.config_for("a1") is None


def test_config_resolves_working_dir(tmp_path: Path) -> None:
    assert DevServerConfig(working_dir="web").resolve_working_dir(tmp_path) == tmp_path / "web"
    assert DevServerConfig().resolve_working_dir(tmp_path) == tmp_path
    with pytest.raises(ValueError):
        DevServerConfig(port=70000)


def test_start_is_refused_while_stopping(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=1.0)

    async def scenario() -> int:
        status = await supervisor.start("a1", "trap '' TERM; while true; do sleep 0.1; done", tmp_path)
        stopping = asyncio.create_task(supervisor.stop("a1"))
        await _wait_for(lambda: supervisor.status("a1").state is DevServerState.STOPPING)
        with pytest.raises(AlreadyRunning, match="stopping"):
            await supervisor.start("a1", "sleep 30", tmp_path)
        await stopping
        return status.pid

    pid = asyncio.run(scenario())

    assert supervisor.status("a1").state is DevServerState.STOPPED
    assert supervisor.running_servers() == []
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


def test_start_superseded_by_stop_hands_back_process(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> None:
        plan = supervisor.plan_start("a1", "sleep 30", tmp_path)
        stop = supervisor.plan_stop("a1")
        assert stop is not None and stop.process is None

        process = await supervisor.launch(plan)
        assert process is not None
        assert supervisor.mark_started(plan, process) is False
        await supervisor.discard(process)
        await process.wait()

        await supervisor.terminate(stop)
        assert supervisor.mark_stopped(stop) is True
        assert supervisor.mark_start_failed(plan, RuntimeError("late")) is False

    asyncio.run(scenario())

    assert supervisor.status("a1").state is DevServerState.STOPPED
    assert supervisor.running_servers() == []


def test_pre_run_stops_early_when_superseded(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor()

    async def scenario() -> None:
        plan = supervisor.plan_start("a1", "sleep 30", tmp_path, pre_run_commands=["sleep 0.2", "echo never"])
        launching = asyncio.create_task(supervisor.launch(plan))
        await asyncio.sleep(0.05)
        stop = supervisor.plan_stop("a1")
        assert await launching is None
        await supervisor.terminate(stop)
        supervisor.mark_stopped(stop)

    asyncio.run(scenario())

    assert "$ echo never" not in supervisor.logs("a1")
    assert supervisor.status("a1").state is DevServerState.STOPPED


def test_forgotten_agent_ignores_late_completions(tmp_path: Path) -> None:
    supervisor = DevServerSupervisor(kill_grace=2.0)

    async def scenario() -> None:
        await supervisor.start("a1", "sleep 30", tmp_path)
        stop = supervisor.plan_stop("a1")
        await supervisor.terminate(stop)
        supervisor.forget("a1")
        assert supervisor.mark_stopped(stop) is False

    asyncio.run(scenario())

    assert supervisor.get("a1") is None
