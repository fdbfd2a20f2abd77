"""
Run orchestration.

`ProcessRunner` ties the runtime pieces together for the two kinds of runs:

- auxiliary commands (`run_command_with_output`): admitted by the global
  command pool, awaited to completion, optionally failing on non-zero exit;
- agent runs (`run_agent_until_result`): spawned detached, then the result
  channel, the process exit and the inactivity watchdog race; whatever wins,
  the termination planner finalizes the process tree before control returns.

Every run executes inside a logging context whose prefix is the next command
id of the registry, so interleaved output stays attributable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import config
from ..errors import CommandFailedError, InactivityTimeoutError, PrematureExitError
from ..models import AgentResult
from ..runtime.logging_context import log_context
from ..runtime.process.spawner import SpawnedProcess, spawn_process
from ..runtime.process.termination import ProcessTerminator
from ..runtime.process.watchdog import InactivityWatchdog
from ..runtime.registry import RunnerRegistry
from ..runtime.result_channel.contracts import ResultChannel
from ..runtime.run_logger import RunLogger
from ..runtime.types import CommandOutput, RunRequest

logger = logging.getLogger(__name__)


def format_command_failure_message(request: RunRequest, exit_code: Optional[int], stderr: str) -> str:
    exit_label = "unknown" if exit_code is None else exit_code
    header = f"Command failed with exit code {exit_label}: {request.command_line}"
    trimmed = stderr.strip()
    if not trimmed:
        return header
    max_chars = int(config.RUNNER.FAILURE_STDERR_TAIL_CHARS)
    if len(trimmed) > max_chars:
        return f"{header}\n{trimmed[-max_chars:]}\n... (stderr truncated)"
    return f"{header}\n{trimmed}"


class ProcessRunner:
    def __init__(self, registry: RunnerRegistry) -> None:
        self.registry = registry

    @property
    def run_logger(self) -> RunLogger:
        return self.registry.run_logger

    async def run_command_with_output(self, request: RunRequest) -> CommandOutput:
        return await self.registry.pools.run_command(lambda: self._run_command(request))

    async def run_agent_until_result(self, request: RunRequest, channel: ResultChannel) -> AgentResult:
        with log_context(prefix=self.registry.next_command_label()):
            self.run_logger.info(f"$ {request.command_line}")
            watchdog = InactivityWatchdog(self._inactivity_timeout(request))
            spawned = await spawn_process(request, self.run_logger, detached=True, on_output=watchdog.reset)
            terminator = self.registry.create_terminator()
            grace_period_sec = self._grace_period(request)
            watchdog.arm()
            try:
                try:
                    result = await self._race(spawned, channel, watchdog)
                except Exception as exc:
                    self.run_logger.error(str(exc))
                    await terminator.finalize(
                        spawned,
                        0.0 if isinstance(exc, InactivityTimeoutError) else grace_period_sec,
                    )
                    raise
                self.run_logger.info(f"Received agent result: {result.model_dump_json(by_alias=True)}")
                await terminator.finalize(spawned, grace_period_sec)
                return result
            except asyncio.CancelledError:
                await self._finalize_cancelled(terminator, spawned)
                raise
            finally:
                watchdog.cancel()

    async def _run_command(self, request: RunRequest) -> CommandOutput:
        with log_context(prefix=self.registry.next_command_label()):
            self.run_logger.info(f"$ {request.command_line}")
            watchdog = InactivityWatchdog(self._inactivity_timeout(request))
            spawned = await spawn_process(request, self.run_logger, on_output=watchdog.reset)
            terminator = self.registry.create_terminator()
            watchdog.arm()
            try:
                exit_code = await self._wait_for_exit(spawned, watchdog)
            except InactivityTimeoutError as exc:
                self.run_logger.error(exc.message)
                await terminator.finalize(spawned, 0.0)
                raise
            except asyncio.CancelledError:
                await self._finalize_cancelled(terminator, spawned)
                raise
            finally:
                watchdog.cancel()

            output = spawned.output
            if exit_code != 0 and request.throw_on_error:
                message = format_command_failure_message(request, exit_code, output.stderr)
                self.run_logger.error(message)
                raise CommandFailedError(message, exit_code)
            return CommandOutput(
                stdout=output.stdout,
                stderr=output.stderr,
                combined=output.combined,
                exit_code=exit_code,
            )

    async def _wait_for_exit(self, spawned: SpawnedProcess, watchdog: InactivityWatchdog) -> int:
        if not watchdog.enabled:
            return await asyncio.shield(spawned.exit)
        exit_wait = asyncio.ensure_future(asyncio.shield(spawned.exit))
        watchdog_wait = asyncio.ensure_future(watchdog.wait())
        try:
            done, _ = await asyncio.wait({exit_wait, watchdog_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            exit_wait.cancel()
            watchdog_wait.cancel()
            watchdog.cancel()
        if exit_wait in done:
            return exit_wait.result()
        watchdog_wait.result()
        raise AssertionError("watchdog settled without firing")

    async def _race(
        self,
        spawned: SpawnedProcess,
        channel: ResultChannel,
        watchdog: InactivityWatchdog,
    ) -> AgentResult:
        result_wait = asyncio.ensure_future(channel.wait_for_result())
        exit_wait = asyncio.ensure_future(asyncio.shield(spawned.exit))
        waiters = {result_wait, exit_wait}
        watchdog_wait: asyncio.Future[None] | None = None
        if watchdog.enabled:
            watchdog_wait = asyncio.ensure_future(watchdog.wait())
            waiters.add(watchdog_wait)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Abandon the losers; the exit future and the channel live on.
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            watchdog.cancel()

        if result_wait in done:
            return result_wait.result()
        if watchdog_wait is not None and watchdog_wait in done:
            watchdog_wait.result()

        exit_code = exit_wait.result()
        late_result = await channel.on_process_exit()
        if late_result is not None:
            return late_result
        raise PrematureExitError(exit_code)

    async def _finalize_cancelled(self, terminator: ProcessTerminator, spawned: SpawnedProcess) -> None:
        if spawned.handle.exit_code is None:
            self.run_logger.error("Run cancelled; terminating process tree.")
        await terminator.finalize(spawned, 0.0)

    def _inactivity_timeout(self, request: RunRequest) -> float:
        if request.inactivity_timeout_sec is not None:
            return float(request.inactivity_timeout_sec)
        return float(config.RUNNER.INACTIVITY_TIMEOUT_SEC)

    def _grace_period(self, request: RunRequest) -> float:
        if request.grace_period_sec is not None:
            return float(request.grace_period_sec)
        return float(config.RUNNER.AGENT_GRACE_PERIOD_SEC)
