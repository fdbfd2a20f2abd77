from __future__ import annotations

from .spawner import RunHandle, SpawnedProcess, spawn_process
from .termination import ProcessTerminator, format_mock_plan
from .tree_killers import ProcessTreeKiller, select_tree_killer
from .watchdog import InactivityWatchdog

__all__ = [
    "InactivityWatchdog",
    "ProcessTerminator",
    "ProcessTreeKiller",
    "RunHandle",
    "SpawnedProcess",
    "format_mock_plan",
    "select_tree_killer",
    "spawn_process",
]
