import asyncio

import pytest

from agent_runner.models import TerminationMode
from agent_runner.runtime.registry import PackageRunner, RunnerRegistry, RuntimeResolver


@pytest.mark.asyncio
async def test_worktree_operations_are_serialized(registry):
    active = 0
    peak = 0

    async def operation():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return "done"

    results = await asyncio.gather(*(registry.serialize_worktree_operation(operation) for _ in range(4)))

    assert results == ["done"] * 4
    assert peak == 1


def test_command_labels_increase(registry):
    assert [registry.next_command_label() for _ in range(3)] == ["[1]", "[2]", "[3]"]


def test_registries_are_isolated(run_logger):
    first = RunnerRegistry(run_logger=run_logger)
    second = RunnerRegistry(run_logger=run_logger)

    first.next_command_label()
    assert second.next_command_label() == "[1]"
    assert first.pools is not second.pools


def test_terminator_reports_plans_to_registry(run_logger):
    seen = []
    registry = RunnerRegistry(run_logger=run_logger, mock_termination=True, on_termination_plan=seen.append)
    terminator = registry.create_terminator()

    plan = registry.tree_killer.build_plan(TerminationMode.MOCK, "SIGTERM", 10, 10)
    terminator._record(plan)

    assert terminator.mock is True
    assert list(registry.termination_plans) == [plan]
    assert seen == [plan]


def test_runtime_resolver_skips_bun_node_shim(monkeypatch):
    resolver = RuntimeResolver()
    probes = {
        "/bun/bin/node": {"execPath": "/bun/bin/bun", "isBun": True},
        "/usr/bin/node": {"execPath": "/usr/bin/node", "isBun": False},
    }
    monkeypatch.setattr(resolver, "_path_candidates", lambda command: list(probes))
    monkeypatch.setattr(resolver, "_probe", lambda command: probes[command])

    assert resolver.node_binary() == "/usr/bin/node"
    assert resolver.package_runner() == PackageRunner("npx")


def test_runtime_resolver_falls_back_to_bunx(monkeypatch):
    resolver = RuntimeResolver()
    calls = []
    monkeypatch.setattr(resolver, "_path_candidates", lambda command: calls.append(command) or [])

    assert resolver.has_node_runtime() is False
    assert resolver.package_runner() == PackageRunner("bunx", ("--bun",))
    assert calls == ["node"]


def test_termination_plan_history_is_bounded(run_logger, override_runner_config):
    override_runner_config(TERMINATION_PLAN_HISTORY=3)
    registry = RunnerRegistry(run_logger=run_logger, mock_termination=True)
    terminator = registry.create_terminator()

    plans = [registry.tree_killer.build_plan(TerminationMode.MOCK, "SIGTERM", pid, pid) for pid in range(10, 15)]
    for plan in plans:
        terminator._record(plan)

    assert list(registry.termination_plans) == plans[-3:]
