import asyncio
import os
import signal
import subprocess
import sys

import pytest

from agent_runner.models import TerminationMode, TerminationStrategy
from agent_runner.runtime.logging_context import LogContext
from agent_runner.runtime.process import tree_killers
from agent_runner.runtime.process.spawner import RunHandle, SpawnedProcess
from agent_runner.runtime.process.termination import ProcessTerminator, format_mock_plan
from agent_runner.runtime.process.tree_killers import (
    DarwinTreeKiller,
    PosixTreeKiller,
    WindowsTreeKiller,
    collect_descendants,
    select_tree_killer,
    signal_processes,
)
from agent_runner.runtime.types import ProcessOutput


class FakeProcess:
    """Stands in for an asyncio subprocess; exits when signaled unless told to ignore SIGTERM."""

    def __init__(self, pid, exit_future, *, ignore_sigterm=False):
        self.pid = pid
        self.returncode = None
        self.signals = []
        self._exit = exit_future
        self._ignore_sigterm = ignore_sigterm

    def send_signal(self, sig):
        self.signals.append(signal.Signals(sig).name)
        if sig == signal.SIGTERM and self._ignore_sigterm:
            return
        self.exit_with(-int(sig))

    def terminate(self):
        self.send_signal(signal.SIGTERM)

    def kill(self):
        self.send_signal(signal.SIGKILL)

    def exit_with(self, code):
        self.returncode = code
        if not self._exit.done():
            self._exit.set_result(code)


class LingeringGroupKiller(PosixTreeKiller):
    """Reports a live group until it receives one of `fatal_signals`."""

    def __init__(self, fatal_signals=("SIGTERM", "SIGKILL")):
        super().__init__()
        self.alive = True
        self.fatal_signals = fatal_signals
        self.signals = []

    def group_alive(self, process_group_id):
        return self.alive

    def execute(self, plan, handle, run_logger):
        self.signals.append(plan.signal)
        if plan.signal in self.fatal_signals:
            self.alive = False


def make_spawned(*, pid=4321, process_group_id=None, ignore_sigterm=False):
    exit_future = asyncio.get_running_loop().create_future()
    process = FakeProcess(pid, exit_future, ignore_sigterm=ignore_sigterm)
    handle = RunHandle(process, process_group_id=process_group_id)
    spawned = SpawnedProcess(handle=handle, exit=exit_future, output=ProcessOutput(), context=LogContext())
    return spawned, process


def read_log(tmp_path):
    return (tmp_path / "main.log").read_text(encoding="utf-8")


def test_plan_without_pid_signals_handle():
    plan = PosixTreeKiller().build_plan(TerminationMode.REAL, "SIGTERM", None)
    assert plan.strategy == TerminationStrategy.NO_PID
    assert plan.pid is None


def test_posix_plans():
    killer = PosixTreeKiller()
    group_plan = killer.build_plan(TerminationMode.MOCK, "SIGTERM", 100, 100)
    child_plan = killer.build_plan(TerminationMode.MOCK, "SIGTERM", 100, None)

    assert group_plan.strategy == TerminationStrategy.PROCESS_GROUP
    assert group_plan.process_group_id == 100
    assert child_plan.strategy == TerminationStrategy.CHILD_ONLY
    assert child_plan.platform == "linux"


def test_windows_plan_uses_tree_kill():
    plan = WindowsTreeKiller().build_plan(TerminationMode.MOCK, "SIGKILL", 100, 100)
    assert plan.strategy == TerminationStrategy.WINDOWS
    assert plan.platform == "win32"


def test_darwin_plan_walks_descendants(monkeypatch):
    monkeypatch.setattr(tree_killers, "collect_descendants", lambda pid: (pid + 1, pid + 2))
    killer = DarwinTreeKiller()

    tree_plan = killer.build_plan(TerminationMode.MOCK, "SIGTERM", 100)
    group_plan = killer.build_plan(TerminationMode.MOCK, "SIGTERM", 100, 100)

    assert tree_plan.strategy == TerminationStrategy.DARWIN_TREE
    assert tree_plan.descendants == (101, 102)
    assert group_plan.strategy == TerminationStrategy.PROCESS_GROUP


def test_select_tree_killer_by_platform():
    assert isinstance(select_tree_killer("win32"), WindowsTreeKiller)
    assert isinstance(select_tree_killer("darwin"), DarwinTreeKiller)
    killer = select_tree_killer("freebsd13")
    assert type(killer) is PosixTreeKiller
    assert killer.platform == "freebsd13"


def test_format_mock_plan(monkeypatch):
    monkeypatch.setattr(tree_killers, "collect_descendants", lambda pid: (7, 8, 9))

    group = PosixTreeKiller().build_plan(TerminationMode.MOCK, "SIGTERM", 42, 42)
    tree = DarwinTreeKiller().build_plan(TerminationMode.MOCK, "SIGKILL", 42)
    no_pid = PosixTreeKiller().build_plan(TerminationMode.MOCK, "SIGTERM", None)

    assert format_mock_plan(group) == "Mock terminate: process-group pid=42 signal=SIGTERM processGroupId=42"
    assert format_mock_plan(tree) == "Mock terminate: darwin-tree pid=42 signal=SIGKILL descendants=3"
    assert format_mock_plan(no_pid) == "Mock terminate: no-pid pid=unknown signal=SIGTERM"


def test_signal_processes_skips_own_pid(run_logger, tmp_path):
    signal_processes([os.getpid()], "SIGTERM", run_logger)
    assert f"Skipping SIGTERM for pid {os.getpid()} to avoid terminating this process." in read_log(tmp_path)


@pytest.mark.asyncio
async def test_mock_termination_records_plan_without_signaling(run_logger, tmp_path):
    spawned, process = make_spawned(process_group_id=4321)
    recorded = []
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=True, on_plan=recorded.append)

    await asyncio.wait_for(terminator.finalize(spawned, 0.0), timeout=1.0)

    assert process.signals == []
    assert len(recorded) == 1
    assert recorded[0].mode == TerminationMode.MOCK
    assert recorded[0].strategy == TerminationStrategy.PROCESS_GROUP
    assert "Mock terminate: process-group pid=4321 signal=SIGTERM processGroupId=4321" in read_log(tmp_path)


@pytest.mark.asyncio
async def test_exit_within_grace_period_sends_no_signal(run_logger):
    spawned, process = make_spawned()
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False)
    asyncio.get_running_loop().call_later(0.05, process.exit_with, 0)

    await terminator.finalize(spawned, 5.0)

    assert process.signals == []
    assert terminator.recorded_plans == []


@pytest.mark.asyncio
async def test_already_exited_process_is_left_alone(run_logger):
    spawned, process = make_spawned()
    process.exit_with(0)
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False)

    await terminator.finalize(spawned, 0.0)

    assert terminator.recorded_plans == []


@pytest.mark.asyncio
async def test_grace_expiry_sends_sigterm(run_logger):
    spawned, process = make_spawned()
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False, sigterm_wait_sec=1.0)

    await terminator.finalize(spawned, 0.05)

    assert process.signals == ["SIGTERM"]
    assert [plan.strategy for plan in terminator.recorded_plans] == [TerminationStrategy.CHILD_ONLY]
    assert spawned.exit.result() == -signal.SIGTERM


@pytest.mark.asyncio
async def test_sigkill_follows_ignored_sigterm(run_logger, tmp_path):
    spawned, process = make_spawned(ignore_sigterm=True)
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False, sigterm_wait_sec=0.05)

    await terminator.finalize(spawned, 0.0)

    assert process.signals == ["SIGTERM", "SIGKILL"]
    assert [plan.signal for plan in terminator.recorded_plans] == ["SIGTERM", "SIGKILL"]
    assert "Agent did not exit after SIGTERM. Sending SIGKILL..." in read_log(tmp_path)


@pytest.mark.asyncio
async def test_concurrent_finalize_runs_once(run_logger):
    spawned, process = make_spawned()
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False)

    await asyncio.gather(terminator.finalize(spawned, 0.0), terminator.finalize(spawned, 0.0))
    await terminator.finalize(spawned, 0.0)

    assert process.signals == ["SIGTERM"]
    assert len(terminator.recorded_plans) == 1


@pytest.mark.asyncio
async def test_zero_grace_request_cuts_pending_grace_wait(run_logger):
    spawned, process = make_spawned()
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=False)

    slow = asyncio.create_task(terminator.finalize(spawned, 30.0))
    await asyncio.sleep(0.05)
    await asyncio.wait_for(terminator.finalize(spawned, 0.0), timeout=2.0)
    await asyncio.wait_for(slow, timeout=2.0)

    assert process.signals == ["SIGTERM"]


@pytest.mark.asyncio
async def test_handle_without_process_uses_no_pid_plan(run_logger):
    loop = asyncio.get_running_loop()
    exit_future = loop.create_future()
    handle = RunHandle(None)
    spawned = SpawnedProcess(handle=handle, exit=exit_future, output=ProcessOutput(), context=LogContext())
    terminator = ProcessTerminator(run_logger, PosixTreeKiller(), mock=True)

    await terminator.finalize(spawned, 0.0)

    assert terminator.recorded_plans[0].strategy == TerminationStrategy.NO_PID


@pytest.mark.asyncio
async def test_group_left_behind_by_exited_leader_gets_sigterm(run_logger, tmp_path):
    spawned, process = make_spawned(process_group_id=4321)
    process.exit_with(0)
    killer = LingeringGroupKiller()
    terminator = ProcessTerminator(run_logger, killer, mock=False, sigterm_wait_sec=1.0)

    await terminator.finalize(spawned, 0.0)

    assert process.signals == []
    assert killer.signals == ["SIGTERM"]
    assert terminator.recorded_plans[0].strategy == TerminationStrategy.PROCESS_GROUP
    assert "Process group -4321 outlived its leader; sending SIGTERM." in read_log(tmp_path)


@pytest.mark.asyncio
async def test_stubborn_group_gets_sigkill(run_logger, tmp_path):
    spawned, process = make_spawned(process_group_id=4321)
    asyncio.get_running_loop().call_later(0.02, process.exit_with, 0)
    killer = LingeringGroupKiller(fatal_signals=("SIGKILL",))
    terminator = ProcessTerminator(run_logger, killer, mock=False, sigterm_wait_sec=0.1)

    await terminator.finalize(spawned, 5.0)

    assert killer.signals == ["SIGTERM", "SIGKILL"]
    assert "Process group -4321 did not exit after SIGTERM. Sending SIGKILL..." in read_log(tmp_path)


@pytest.mark.asyncio
async def test_group_is_not_swept_in_mock_mode(run_logger):
    spawned, process = make_spawned(process_group_id=4321)
    process.exit_with(0)
    killer = LingeringGroupKiller()
    terminator = ProcessTerminator(run_logger, killer, mock=True)

    await terminator.finalize(spawned, 0.0)

    assert killer.signals == []
    assert terminator.recorded_plans == []


@pytest.mark.asyncio
async def test_group_signaled_by_termination_is_not_swept_again(run_logger):
    spawned, process = make_spawned(process_group_id=4321)
    killer = LingeringGroupKiller(fatal_signals=())
    terminator = ProcessTerminator(run_logger, killer, mock=False, sigterm_wait_sec=0.05)
    asyncio.get_running_loop().call_later(0.1, process.exit_with, -9)

    await terminator.finalize(spawned, 0.0)

    assert killer.signals == ["SIGTERM", "SIGKILL"]


@pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX process groups")
def test_posix_group_alive_tracks_session():
    child = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    child.wait(timeout=10)

    assert PosixTreeKiller().group_alive(child.pid) is False

@pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX process groups")
def test_collect_descendants_finds_grandchild():
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(30)\n"
    )
    parent = subprocess.Popen(
        [sys.executable, "-c", script],
        stdout=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    try:
        grandchild_pid = int(parent.stdout.readline().strip())
        assert grandchild_pid in collect_descendants(parent.pid)
    finally:
        os.killpg(parent.pid, signal.SIGKILL)
        parent.wait(timeout=5)
        parent.stdout.close()
