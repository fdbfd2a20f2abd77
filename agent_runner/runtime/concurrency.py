import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")

GLOBAL_COMMAND_POOL_KEY = "__commands__"

logger = logging.getLogger(__name__)


class ConcurrencyPool:
    """
    Bounded concurrency gate for one resource key.

    Behavior:
    - Callers queue on a semaphore until one of `limit` slots frees up.
    - Admission is FIFO; there is no priority.
    - The slot is released when the task completes or fails.
    """

    def __init__(self, key: str, limit: int) -> None:
        self.key = key
        self.limit = max(1, int(limit))
        self._semaphore = asyncio.Semaphore(self.limit)
        self._state_lock = threading.Lock()
        self._running = 0
        self._queued = 0
        self._peak_running = 0
        self._loop_id: int | None = None

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        await self.acquire_slot()
        try:
            return await task()
        finally:
            await self.release_slot()

    async def acquire_slot(self) -> None:
        self._ensure_loop()
        with self._state_lock:
            self._queued += 1
        try:
            await self._semaphore.acquire()
        finally:
            with self._state_lock:
                self._queued -= 1
        with self._state_lock:
            self._running += 1
            self._peak_running = max(self._peak_running, self._running)

    async def release_slot(self) -> None:
        with self._state_lock:
            if self._running > 0:
                self._running -= 1
        self._semaphore.release()

    def state(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "key": self.key,
                "running": self._running,
                "queued": self._queued,
                "limit": self.limit,
                "peak_running": self._peak_running,
            }

    def _ensure_loop(self) -> None:
        """
        Recreate the semaphore when used from a different event loop.
        This keeps test isolation stable under pytest-asyncio.
        """
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        current_id = id(current_loop)
        if self._loop_id is None:
            self._loop_id = current_id
            return
        if self._loop_id != current_id:
            self._semaphore = asyncio.Semaphore(self.limit)
            self._running = 0
            self._queued = 0
            self._loop_id = current_id


class ConcurrencyRegistry:
    """
    Per-resource pools, created lazily.

    Agent pools are keyed by tool name and share one configured limit. Changing
    that limit clears the map: pools created afterwards use the new limit while
    runs already holding a pool keep its original limit. Auxiliary commands go
    through a single global pool, or run unbounded when no limit is set.
    """

    def __init__(self, agent_limit: int = 1, command_limit: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._agent_limit = max(1, int(agent_limit))
        self._agent_pools: Dict[str, ConcurrencyPool] = {}
        self._command_pool: ConcurrencyPool | None = None
        self.set_command_concurrency(command_limit)

    @property
    def agent_limit(self) -> int:
        return self._agent_limit

    def set_agent_concurrency(self, limit: int) -> None:
        with self._lock:
            self._agent_limit = max(1, int(limit))
            self._agent_pools.clear()
        logger.info("Agent concurrency set to %s", self._agent_limit)

    def set_command_concurrency(self, limit: Optional[int]) -> None:
        with self._lock:
            if limit is None or int(limit) <= 0:
                self._command_pool = None
                return
            self._command_pool = ConcurrencyPool(GLOBAL_COMMAND_POOL_KEY, int(limit))

    def agent_pool(self, tool: str) -> ConcurrencyPool:
        with self._lock:
            pool = self._agent_pools.get(tool)
            if pool is None:
                pool = ConcurrencyPool(tool, self._agent_limit)
                self._agent_pools[tool] = pool
            return pool

    def command_pool(self) -> ConcurrencyPool | None:
        with self._lock:
            return self._command_pool

    async def run_agent(self, tool: str, task: Callable[[], Awaitable[T]]) -> T:
        return await self.agent_pool(tool).run(task)

    async def run_command(self, task: Callable[[], Awaitable[T]]) -> T:
        pool = self.command_pool()
        if pool is None:
            return await task()
        return await pool.run(task)

    def state(self) -> Dict[str, Any]:
        with self._lock:
            agent_pools = list(self._agent_pools.values())
            command_pool = self._command_pool
        return {
            "agent_limit": self._agent_limit,
            "agents": {pool.key: pool.state() for pool in agent_pools},
            "commands": command_pool.state() if command_pool is not None else None,
        }
