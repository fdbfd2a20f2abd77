"""
Runner registry.

Holds the state that is shared by every run started from one top-level
construction: concurrency pools, the command id counter, the cached runtime
probe, the worktree lock and the termination settings. Run functions receive
the registry by reference instead of reaching for module globals, so tests
can build an isolated registry per case.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from ..config import config
from ..models import TerminationPlan
from .concurrency import ConcurrencyRegistry
from .process.termination import ProcessTerminator
from .process.tree_killers import ProcessTreeKiller, select_tree_killer
from .run_logger import RunLogger

T = TypeVar("T")

logger = logging.getLogger(__name__)

_NODE_PROBE_SCRIPT = "JSON.stringify({ execPath: process.execPath, isBun: Boolean(process.versions && process.versions.bun) })"


@dataclass(frozen=True)
class PackageRunner:
    command: str
    args_prefix: tuple[str, ...] = ()


class RuntimeResolver:
    """Finds a real Node.js runtime on PATH (Bun's `node` shim does not count)."""

    def __init__(self, probe_timeout_sec: Optional[float] = None) -> None:
        self._probe_timeout_sec = (
            float(config.RUNNER.RUNTIME_PROBE_TIMEOUT_SEC) if probe_timeout_sec is None else float(probe_timeout_sec)
        )
        self._lock = threading.Lock()
        self._node_binary: Optional[str] = None
        self._probed = False

    def node_binary(self) -> Optional[str]:
        with self._lock:
            if not self._probed:
                self._node_binary = self._find_node_binary()
                self._probed = True
                logger.debug("Node runtime: %s", self._node_binary or "not found")
            return self._node_binary

    def has_node_runtime(self) -> bool:
        return self.node_binary() is not None

    def package_runner(self) -> PackageRunner:
        if self.has_node_runtime():
            return PackageRunner("npx")
        return PackageRunner("bunx", ("--bun",))

    def _find_node_binary(self) -> Optional[str]:
        for candidate in self._path_candidates("node"):
            info = self._probe(candidate)
            if not info or info.get("isBun") or not info.get("execPath"):
                continue
            return str(info["execPath"])
        return None

    def _path_candidates(self, command: str) -> list[str]:
        candidates: list[str] = []
        for directory in (os.environ.get("PATH") or "").split(os.pathsep):
            if not directory:
                continue
            found = shutil.which(command, path=directory)
            if found and found not in candidates:
                candidates.append(found)
        return candidates

    def _probe(self, command: str) -> Optional[dict[str, Any]]:
        try:
            completed = subprocess.run(
                [command, "-p", _NODE_PROBE_SCRIPT],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                timeout=self._probe_timeout_sec,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        if completed.returncode != 0 or not completed.stdout.strip():
            return None
        try:
            payload = json.loads(completed.stdout.strip())
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


class RunnerRegistry:
    def __init__(
        self,
        *,
        run_logger: Optional[RunLogger] = None,
        agent_concurrency: Optional[int] = None,
        command_concurrency: Optional[int] = None,
        mock_termination: Optional[bool] = None,
        on_termination_plan: Optional[Callable[[TerminationPlan], None]] = None,
        tree_killer: Optional[ProcessTreeKiller] = None,
        runtime: Optional[RuntimeResolver] = None,
    ) -> None:
        self.run_logger = run_logger or RunLogger()
        self.pools = ConcurrencyRegistry(
            agent_limit=int(config.RUNNER.AGENT_CONCURRENCY) if agent_concurrency is None else agent_concurrency,
            command_limit=int(config.RUNNER.COMMAND_CONCURRENCY) if command_concurrency is None else command_concurrency,
        )
        self.runtime = runtime or RuntimeResolver()
        self.tree_killer = tree_killer or select_tree_killer()
        self.mock_termination = (
            bool(config.RUNNER.MOCK_TERMINATION) if mock_termination is None else bool(mock_termination)
        )
        self.on_termination_plan = on_termination_plan
        self.termination_plans: Deque[TerminationPlan] = deque(maxlen=int(config.RUNNER.TERMINATION_PLAN_HISTORY))
        self._command_ids = itertools.count(1)
        self._command_id_lock = threading.Lock()
        self._worktree_lock: asyncio.Lock | None = None
        self._worktree_loop_id: int | None = None

    def next_command_label(self) -> str:
        with self._command_id_lock:
            return f"[{next(self._command_ids)}]"

    def set_agent_concurrency(self, limit: int) -> None:
        self.pools.set_agent_concurrency(limit)

    def set_command_concurrency(self, limit: Optional[int]) -> None:
        self.pools.set_command_concurrency(limit)

    def create_terminator(self) -> ProcessTerminator:
        return ProcessTerminator(
            self.run_logger,
            self.tree_killer,
            mock=self.mock_termination,
            on_plan=self._record_plan,
        )

    async def serialize_worktree_operation(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` while holding the process-wide worktree lock."""
        async with self._get_worktree_lock():
            return await operation()

    def _get_worktree_lock(self) -> asyncio.Lock:
        loop_id = id(asyncio.get_running_loop())
        if self._worktree_lock is None or self._worktree_loop_id != loop_id:
            self._worktree_lock = asyncio.Lock()
            self._worktree_loop_id = loop_id
        return self._worktree_lock

    def _record_plan(self, plan: TerminationPlan) -> None:
        self.termination_plans.append(plan)
        if self.on_termination_plan is not None:
            self.on_termination_plan(plan)
