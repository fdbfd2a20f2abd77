from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from jinja2 import Template

from ..config import config
from ..errors import AgentOutputError
from ..models import AgentDefinition, ResultDelivery
from ..runtime.registry import RunnerRegistry
from ..runtime.result_channel.callback_server import AgentResultServer
from ..runtime.result_channel.contracts import ResultChannel
from ..runtime.result_channel.file_channel import FileResultChannel
from ..runtime.result_channel.payload import ResultValidator, parse_json_with_repair
from ..runtime.types import RunRequest
from .agent_command import build_agent_command
from .agent_registry import AgentRegistry
from .process_runner import ProcessRunner

logger = logging.getLogger(__name__)

RESULT_DELIVERY_INSTRUCTION = "{RESULT_DELIVERY_INSTRUCTION}"

_TEMPLATE_FILES = {
    ResultDelivery.CALLBACK: "result_delivery_callback.md.j2",
    ResultDelivery.FILE: "result_delivery_file.md.j2",
    ResultDelivery.STDOUT: "result_delivery_stdout.md.j2",
}


def template_dir() -> Path:
    return Path(str(config.SYSTEM.TEMPLATES_DIR))


def render_delivery_instruction(delivery: ResultDelivery, validator: ResultValidator, **context: Any) -> str:
    template_text = (template_dir() / _TEMPLATE_FILES[delivery]).read_text(encoding="utf-8")
    schema = validator.json_schema()
    payload_description = (
        "valid JSON" if validator.expects_json else "plain text (write 'DONE' if no specific result is required)"
    )
    return Template(template_text).render(
        payload_description=payload_description,
        content_type="application/json" if validator.expects_json else "text/plain",
        schema_json=json.dumps(schema, indent=2, ensure_ascii=False) if schema is not None else "",
        **context,
    )


def inject_delivery_instruction(prompt: str, instruction: str) -> str:
    if RESULT_DELIVERY_INSTRUCTION not in prompt:
        return prompt
    return prompt.replace(RESULT_DELIVERY_INSTRUCTION, instruction)


def parse_agent_stdout(definition: AgentDefinition, stdout: str, exit_code: int, validator: ResultValidator) -> Any:
    trimmed = stdout.strip()
    if not trimmed:
        raise AgentOutputError(
            f"{definition.name} produced no usable output (exit {exit_code}).",
            {"agent": definition.name, "exit_code": exit_code},
        )
    if not validator.expects_json:
        return trimmed
    try:
        value, _ = parse_json_with_repair(trimmed)
    except ValueError as exc:
        raise AgentOutputError("Invalid JSON response from agent.", {"agent": definition.name}) from exc
    return validator.validate(value)


def _run_timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S-%f")


def dedupe_tools(tools: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    unique: List[str] = []
    for tool in tools:
        if tool in seen:
            continue
        seen.add(tool)
        unique.append(tool)
    return unique


class AgentService:
    """Runs agents without interaction and returns their delivered results."""

    def __init__(
        self,
        registry: RunnerRegistry,
        agents: Optional[AgentRegistry] = None,
        runner: Optional[ProcessRunner] = None,
    ) -> None:
        self.registry = registry
        self.agents = agents or AgentRegistry()
        self.runner = runner or ProcessRunner(registry)

    async def run_non_interactive_agents(
        self,
        tools: Iterable[str],
        prompt: str,
        cwd: str | Path,
        schema: Any = None,
        **options: Any,
    ) -> List[Any]:
        unique = dedupe_tools(tools)
        return list(
            await asyncio.gather(
                *(self.run_non_interactive_agent(tool, prompt, cwd, schema, **options) for tool in unique)
            )
        )

    async def run_non_interactive_agent(
        self,
        tool: str,
        prompt: str,
        cwd: str | Path,
        schema: Any = None,
        *,
        inactivity_timeout_sec: Optional[float] = None,
        grace_period_sec: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Any:
        definition = self.agents.require(tool)
        validator = ResultValidator(schema)

        async def run() -> Any:
            return await self._run(
                definition,
                prompt,
                Path(cwd).expanduser().resolve(),
                validator,
                inactivity_timeout_sec=inactivity_timeout_sec,
                grace_period_sec=grace_period_sec,
                env=dict(env or {}),
            )

        return await self.registry.pools.run_agent(definition.name, run)

    async def _run(
        self,
        definition: AgentDefinition,
        prompt: str,
        cwd: Path,
        validator: ResultValidator,
        *,
        inactivity_timeout_sec: Optional[float],
        grace_period_sec: Optional[float],
        env: dict[str, str],
    ) -> Any:
        if definition.result_delivery == ResultDelivery.STDOUT:
            return await self._run_with_stdout(definition, prompt, cwd, validator, inactivity_timeout_sec, env)

        channel, instruction = await self._open_channel(definition, cwd, validator)
        try:
            resolved_prompt = inject_delivery_instruction(prompt, instruction)
            self.registry.run_logger.log_prompt(
                f"Prompt for {definition.name}",
                resolved_prompt,
                int(config.RUNNER.PROMPT_LOG_LIMIT),
            )
            command = build_agent_command(definition, resolved_prompt, self.registry.runtime)
            request = RunRequest(
                command=command.command,
                args=command.args,
                cwd=cwd,
                env=env,
                stream=True,
                terminal=command.terminal,
                inactivity_timeout_sec=inactivity_timeout_sec,
                grace_period_sec=grace_period_sec if grace_period_sec is not None else definition.grace_period_sec,
            )
            result = await self.runner.run_agent_until_result(request, channel)
            return result.result
        finally:
            await channel.close()

    async def _run_with_stdout(
        self,
        definition: AgentDefinition,
        prompt: str,
        cwd: Path,
        validator: ResultValidator,
        inactivity_timeout_sec: Optional[float],
        env: dict[str, str],
    ) -> Any:
        instruction = render_delivery_instruction(ResultDelivery.STDOUT, validator)
        resolved_prompt = inject_delivery_instruction(prompt, instruction)
        command = build_agent_command(definition, resolved_prompt, self.registry.runtime)
        output = await self.runner.run_command_with_output(
            RunRequest(
                command=command.command,
                args=command.args,
                cwd=cwd,
                env={"NODE_ENV": "production", **env},
                stream=True,
                terminal=command.terminal,
                throw_on_error=False,
                inactivity_timeout_sec=inactivity_timeout_sec,
            )
        )
        return parse_agent_stdout(definition, output.stdout, output.exit_code, validator)

    async def _open_channel(
        self,
        definition: AgentDefinition,
        cwd: Path,
        validator: ResultValidator,
    ) -> tuple[ResultChannel, str]:
        response_dir = cwd / str(config.RUNNER.RESPONSE_DIR)
        response_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{_run_timestamp()}-{definition.name}"

        if definition.result_delivery == ResultDelivery.FILE:
            result_path = response_dir / f"{stem}.result"
            file_channel = FileResultChannel(result_path, validator)
            instruction = render_delivery_instruction(ResultDelivery.FILE, validator, result_path=str(result_path))
            return file_channel, instruction

        server = AgentResultServer(validator)
        callback_url = await server.start()
        try:
            instruction = render_delivery_instruction(
                ResultDelivery.CALLBACK,
                validator,
                payload_path=str(response_dir / f"{stem}.log"),
                callback_url=callback_url,
            )
        except Exception:
            await server.close()
            raise
        return server, instruction
