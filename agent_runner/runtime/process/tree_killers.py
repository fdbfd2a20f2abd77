"""
Platform strategies for signaling a process tree.

One killer is selected per platform and reused for every termination attempt:
- Windows: native recursive tree kill (`taskkill /T /F`).
- macOS: signal the process group when one is known, otherwise walk the
  descendants of the child (restricted to the child's process group) and
  signal each before the child itself.
- Other POSIX: signal the process group when one is known, otherwise the
  direct child only.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from typing import TYPE_CHECKING, Optional, Tuple

import psutil  # type: ignore[import-untyped]

from ...models import TerminationMode, TerminationPlan, TerminationStrategy

if TYPE_CHECKING:
    from ..run_logger import RunLogger
    from .spawner import RunHandle

logger = logging.getLogger(__name__)


class ProcessTreeKiller:
    platform: str = sys.platform

    def __init__(self, platform: str | None = None) -> None:
        if platform is not None:
            self.platform = platform

    def build_plan(
        self,
        mode: TerminationMode,
        signal_name: str,
        pid: int | None,
        process_group_id: int | None = None,
    ) -> TerminationPlan:
        if not pid:
            return TerminationPlan(
                mode=mode,
                platform=self.platform,
                signal=signal_name,
                strategy=TerminationStrategy.NO_PID,
            )
        return self._plan_for_pid(mode, signal_name, pid, process_group_id)

    def _plan_for_pid(
        self,
        mode: TerminationMode,
        signal_name: str,
        pid: int,
        process_group_id: int | None,
    ) -> TerminationPlan:
        return TerminationPlan(
            mode=mode,
            platform=self.platform,
            signal=signal_name,
            pid=pid,
            strategy=TerminationStrategy.CHILD_ONLY,
        )

    def execute(self, plan: TerminationPlan, handle: "RunHandle", run_logger: "RunLogger") -> None:
        if plan.strategy == TerminationStrategy.NO_PID:
            run_logger.info(f"Agent has no pid; sending {plan.signal} to child process.")
        else:
            run_logger.info(f"Terminating child pid {plan.pid} with {plan.signal}.")
        handle.kill(plan.signal)

    def group_alive(self, process_group_id: int) -> bool:
        """Whether any process is left in `process_group_id`."""
        return False


class WindowsTreeKiller(ProcessTreeKiller):
    platform = "win32"

    def _plan_for_pid(
        self,
        mode: TerminationMode,
        signal_name: str,
        pid: int,
        process_group_id: int | None,
    ) -> TerminationPlan:
        return TerminationPlan(
            mode=mode,
            platform=self.platform,
            signal=signal_name,
            pid=pid,
            strategy=TerminationStrategy.WINDOWS,
        )

    def execute(self, plan: TerminationPlan, handle: "RunHandle", run_logger: "RunLogger") -> None:
        if plan.strategy != TerminationStrategy.WINDOWS:
            super().execute(plan, handle, run_logger)
            return
        run_logger.info(f"Terminating Windows process tree for pid {plan.pid} with {plan.signal}.")
        try:
            subprocess.run(
                ["taskkill", "/PID", str(plan.pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            logger.warning("taskkill failed for pid %s; signaling child", plan.pid, exc_info=True)
            handle.kill(plan.signal)


class PosixTreeKiller(ProcessTreeKiller):
    platform = "linux"

    def group_alive(self, process_group_id: int) -> bool:
        try:
            os.killpg(process_group_id, 0)
        except OSError:
            return False
        return True

    def _plan_for_pid(
        self,
        mode: TerminationMode,
        signal_name: str,
        pid: int,
        process_group_id: int | None,
    ) -> TerminationPlan:
        if process_group_id:
            return TerminationPlan(
                mode=mode,
                platform=self.platform,
                signal=signal_name,
                pid=pid,
                process_group_id=process_group_id,
                strategy=TerminationStrategy.PROCESS_GROUP,
            )
        return super()._plan_for_pid(mode, signal_name, pid, process_group_id)

    def execute(self, plan: TerminationPlan, handle: "RunHandle", run_logger: "RunLogger") -> None:
        if plan.strategy != TerminationStrategy.PROCESS_GROUP:
            super().execute(plan, handle, run_logger)
            return
        run_logger.info(f"Terminating process group -{plan.process_group_id} with {plan.signal}.")
        try:
            os.killpg(int(plan.process_group_id or 0), getattr(signal, plan.signal))
        except OSError as exc:
            logger.warning(
                "Signaling process group %s failed (%s); signaling child",
                plan.process_group_id,
                exc,
            )
            handle.kill(plan.signal)


class DarwinTreeKiller(PosixTreeKiller):
    platform = "darwin"

    def _plan_for_pid(
        self,
        mode: TerminationMode,
        signal_name: str,
        pid: int,
        process_group_id: int | None,
    ) -> TerminationPlan:
        if process_group_id:
            return super()._plan_for_pid(mode, signal_name, pid, process_group_id)
        return TerminationPlan(
            mode=mode,
            platform=self.platform,
            signal=signal_name,
            pid=pid,
            strategy=TerminationStrategy.DARWIN_TREE,
            descendants=collect_descendants(pid),
        )

    def execute(self, plan: TerminationPlan, handle: "RunHandle", run_logger: "RunLogger") -> None:
        if plan.strategy != TerminationStrategy.DARWIN_TREE:
            super().execute(plan, handle, run_logger)
            return
        descendants = list(plan.descendants or ())
        run_logger.info(
            f"Terminating macOS process tree for pid {plan.pid} with {plan.signal}; descendants={descendants}"
        )
        signal_processes(descendants, plan.signal, run_logger)
        handle.kill(plan.signal)


def _process_group_of(pid: int) -> Optional[int]:
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def collect_descendants(root_pid: int) -> Tuple[int, ...]:
    """Walk the children of `root_pid`, keeping those in the root's process group."""
    root_pgid = _process_group_of(root_pid)
    to_visit = [root_pid]
    visited: set[int] = set()
    descendants: list[int] = []
    while to_visit:
        pid = to_visit.pop()
        if pid in visited:
            continue
        visited.add(pid)
        if pid != root_pid:
            descendants.append(pid)
        try:
            children = psutil.Process(pid).children()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        for child in children:
            if child.pid in visited:
                continue
            if root_pgid is not None and _process_group_of(child.pid) != root_pgid:
                continue
            to_visit.append(child.pid)
    return tuple(descendants)


def signal_processes(pids: list[int], signal_name: str, run_logger: "RunLogger") -> None:
    own = {os.getpid(), os.getppid()}
    sig = getattr(signal, signal_name)
    for pid in pids:
        if pid in own:
            run_logger.info(f"Skipping {signal_name} for pid {pid} to avoid terminating this process.")
            continue
        try:
            os.kill(pid, sig)
        except OSError:
            # Already exited or not ours to signal.
            continue


def select_tree_killer(platform: str | None = None) -> ProcessTreeKiller:
    current = platform or sys.platform
    if current == "win32":
        return WindowsTreeKiller()
    if current == "darwin":
        return DarwinTreeKiller()
    return PosixTreeKiller(current)
