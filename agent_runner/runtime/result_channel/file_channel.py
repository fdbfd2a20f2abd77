from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from ...config import config
from ...models import AgentResult
from .payload import ResultValidator

logger = logging.getLogger(__name__)


class FileResultChannel:
    """
    Result delivery through a file the agent writes.

    The file is polled until it appears with content. Its text is parsed as
    JSON when the validator expects JSON and as trimmed text otherwise. A
    successfully read file is removed; removal errors are ignored.
    """

    def __init__(
        self,
        path: str | Path,
        validator: Optional[ResultValidator] = None,
        *,
        poll_interval_sec: Optional[float] = None,
    ) -> None:
        self.path = Path(path)
        self._validator = validator or ResultValidator()
        self._poll_interval_sec = (
            float(config.RUNNER.RESULT_POLL_INTERVAL_SEC) if poll_interval_sec is None else float(poll_interval_sec)
        )

    async def wait_for_result(self) -> AgentResult:
        while True:
            result = self._read_if_ready()
            if result is not None:
                return result
            await asyncio.sleep(self._poll_interval_sec)

    async def on_process_exit(self) -> Optional[AgentResult]:
        return self._read_if_ready()

    async def close(self) -> None:
        return None

    def _read_if_ready(self) -> Optional[AgentResult]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        if not text.strip():
            return None
        content_type = "application/json" if self._validator.expects_json else "text/plain"
        value = self._validator.parse_and_validate(content_type, text)
        logger.info("Read agent result from %s", self.path)
        try:
            self.path.unlink()
        except OSError:
            logger.debug("Failed to remove result file %s", self.path, exc_info=True)
        return AgentResult(result=value)
