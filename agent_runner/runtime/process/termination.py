from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from ...config import config
from ...models import TerminationMode, TerminationPlan, TerminationStrategy
from ..run_logger import RunLogger
from .spawner import SpawnedProcess
from .tree_killers import ProcessTreeKiller, select_tree_killer

logger = logging.getLogger(__name__)

_GROUP_POLL_INTERVAL_SEC = 0.05


def format_mock_plan(plan: TerminationPlan) -> str:
    pid = plan.pid if plan.pid is not None else "unknown"
    base = f"Mock terminate: {plan.strategy.value} pid={pid} signal={plan.signal}"
    if plan.strategy == TerminationStrategy.DARWIN_TREE:
        return f"{base} descendants={len(plan.descendants or ())}"
    if plan.strategy == TerminationStrategy.PROCESS_GROUP:
        group = plan.process_group_id if plan.process_group_id is not None else "unknown"
        return f"{base} processGroupId={group}"
    return base


async def _wait_for(future: Awaitable[object], timeout: float) -> bool:
    try:
        await asyncio.wait_for(asyncio.shield(future), timeout=max(0.0, timeout))
    except asyncio.TimeoutError:
        return False
    return True


class ProcessTerminator:
    """
    Guarantees a spawned process tree is gone before control returns.

    `finalize` runs at most one termination sequence per handle; concurrent or
    repeated calls await the sequence already in flight. A later call with a
    zero grace period cuts the grace wait of the in-flight sequence short.

    In mock mode the plan is computed and recorded but no signal is sent and
    the exit is not awaited.
    """

    def __init__(
        self,
        run_logger: RunLogger,
        tree_killer: Optional[ProcessTreeKiller] = None,
        *,
        mock: Optional[bool] = None,
        on_plan: Optional[Callable[[TerminationPlan], None]] = None,
        sigterm_wait_sec: Optional[float] = None,
    ) -> None:
        self._run_logger = run_logger
        self.tree_killer = tree_killer or select_tree_killer()
        self.mock = bool(config.RUNNER.MOCK_TERMINATION) if mock is None else bool(mock)
        self._on_plan = on_plan
        self.sigterm_wait_sec = (
            float(config.RUNNER.SIGTERM_WAIT_SEC) if sigterm_wait_sec is None else float(sigterm_wait_sec)
        )
        self.recorded_plans: List[TerminationPlan] = []

    async def finalize(self, spawned: SpawnedProcess, grace_period_sec: float) -> None:
        handle = spawned.handle
        if grace_period_sec <= 0:
            handle.grace_cut.set()
        if handle.finalizing is None:
            handle.finalizing = asyncio.ensure_future(self._finalize(spawned, grace_period_sec))
        await asyncio.shield(handle.finalizing)

    async def _finalize(self, spawned: SpawnedProcess, grace_period_sec: float) -> None:
        handle = spawned.handle
        if handle.exit_code is not None or handle.killed:
            await spawned.exit
            await self._sweep_group(spawned)
            return

        if await self._wait_for_grace(spawned, grace_period_sec):
            await spawned.exit
            await self._sweep_group(spawned)
            return

        if self.mock:
            self._record(
                self.tree_killer.build_plan(
                    TerminationMode.MOCK,
                    "SIGTERM",
                    handle.pid,
                    handle.process_group_id,
                )
            )
            return
        await self._terminate_tree(spawned)
        await spawned.exit

    async def _wait_for_grace(self, spawned: SpawnedProcess, grace_period_sec: float) -> bool:
        handle = spawned.handle
        if grace_period_sec > 0 and not handle.grace_cut.is_set():
            cut_wait = asyncio.ensure_future(handle.grace_cut.wait())
            try:
                await asyncio.wait(
                    {spawned.exit, cut_wait},
                    timeout=grace_period_sec,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                cut_wait.cancel()
        return spawned.exit.done() or handle.exit_code is not None

    async def _terminate_tree(self, spawned: SpawnedProcess) -> None:
        handle = spawned.handle
        if handle.exit_code is not None or handle.killed:
            return

        self._signal(spawned, "SIGTERM")
        if await _wait_for(spawned.exit, self.sigterm_wait_sec) or handle.exit_code is not None:
            return

        self._run_logger.info("Agent did not exit after SIGTERM. Sending SIGKILL...")
        self._signal(spawned, "SIGKILL")

    async def _sweep_group(self, spawned: SpawnedProcess) -> None:
        """Signal processes left in the group of a leader that already exited."""
        handle = spawned.handle
        group = handle.process_group_id
        if self.mock or handle.killed or not group or not self.tree_killer.group_alive(group):
            return

        self._run_logger.info(f"Process group -{group} outlived its leader; sending SIGTERM.")
        self._signal(spawned, "SIGTERM")
        if await self._wait_group_exit(group, self.sigterm_wait_sec):
            return

        self._run_logger.info(f"Process group -{group} did not exit after SIGTERM. Sending SIGKILL...")
        self._signal(spawned, "SIGKILL")

    async def _wait_group_exit(self, group: int, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while self.tree_killer.group_alive(group):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(_GROUP_POLL_INTERVAL_SEC)
        return True

    def _signal(self, spawned: SpawnedProcess, signal_name: str) -> None:
        handle = spawned.handle
        plan = self.tree_killer.build_plan(
            TerminationMode.REAL,
            signal_name,
            handle.pid,
            handle.process_group_id,
        )
        self._record(plan)
        self.tree_killer.execute(plan, handle, self._run_logger)

    def _record(self, plan: TerminationPlan) -> None:
        self.recorded_plans.append(plan)
        if self._on_plan is not None:
            self._on_plan(plan)
        if plan.mode == TerminationMode.MOCK:
            self._run_logger.info(format_mock_plan(plan))
        else:
            logger.debug("Termination plan: %s", plan.model_dump(mode="json"))
