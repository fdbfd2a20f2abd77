from __future__ import annotations

from typing import Optional, Protocol

from ...models import AgentResult


class ResultChannel(Protocol):
    async def wait_for_result(self) -> AgentResult:
        ...

    async def on_process_exit(self) -> Optional[AgentResult]:
        """Last chance to produce a result once the agent process has exited."""
        ...

    async def close(self) -> None:
        ...
