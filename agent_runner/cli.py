from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Sequence

from .errors import AgentConfigurationError, AgentRunError
from .logging_config import setup_logging
from .runtime.registry import RunnerRegistry
from .runtime.run_logger import RunLogger
from .runtime.types import RunRequest
from .services.agent_registry import AgentRegistry, load_agent_overrides
from .services.agent_service import AgentService
from .services.process_runner import ProcessRunner

EXIT_FAILURE = 2
EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-runner",
        description="Run external coding agents and collect their results",
    )
    parser.add_argument("--log-file", help="Append run output to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    agent = subparsers.add_parser("agent", help="Run one agent until it delivers a result")
    agent.add_argument("tool", help="Agent name or alias")
    prompt_group = agent.add_mutually_exclusive_group(required=True)
    prompt_group.add_argument("--prompt", help="Prompt text")
    prompt_group.add_argument("--prompt-file", help="Read the prompt from this file")
    agent.add_argument("--cwd", default=".", help="Working directory of the agent")
    agent.add_argument("--schema", help="JSON Schema file the result must satisfy")
    agent.add_argument("--agents-config", help="YAML file with agent overrides")
    agent.add_argument(
        "--inactivity-timeout",
        type=float,
        default=None,
        help="Fail when the agent is silent for this many seconds",
    )
    agent.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Seconds the agent gets to exit after delivering its result",
    )

    exec_parser = subparsers.add_parser("exec", help="Run a command with logging")
    exec_parser.add_argument("--cwd", default=".", help="Working directory of the command")
    exec_parser.add_argument(
        "--inactivity-timeout",
        type=float,
        default=None,
        help="Fail when the command is silent for this many seconds",
    )
    exec_parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command and arguments")
    return parser


def _normalize_passthrough(args: list[str]) -> list[str]:
    if args and args[0] == "--":
        return args[1:]
    return args


def _read_json_file(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise AgentConfigurationError(f"Failed to read schema file {path}: {exc}") from exc


async def _with_signal_cancellation(awaitable: Awaitable[Any]) -> Any:
    """Cancel the run on SIGINT/SIGTERM so its process tree is finalized."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        return await task
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _run_agent(parsed: argparse.Namespace, registry: RunnerRegistry) -> int:
    overrides = load_agent_overrides(parsed.agents_config) if parsed.agents_config else None
    service = AgentService(registry, AgentRegistry(overrides))
    prompt = parsed.prompt
    if parsed.prompt_file:
        try:
            prompt = Path(parsed.prompt_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise AgentConfigurationError(f"Failed to read prompt file {parsed.prompt_file}: {exc}") from exc
    schema = _read_json_file(parsed.schema) if parsed.schema else None
    result = await service.run_non_interactive_agent(
        parsed.tool,
        prompt,
        parsed.cwd,
        schema,
        inactivity_timeout_sec=parsed.inactivity_timeout,
        grace_period_sec=parsed.grace_period,
    )
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0


async def _run_exec(parsed: argparse.Namespace, registry: RunnerRegistry) -> int:
    argv = _normalize_passthrough(list(parsed.argv))
    if not argv:
        raise AgentConfigurationError("No command given to exec.")
    output = await ProcessRunner(registry).run_command_with_output(
        RunRequest(
            command=argv[0],
            args=tuple(argv[1:]),
            cwd=Path(parsed.cwd).expanduser().resolve(),
            stream=True,
            inactivity_timeout_sec=parsed.inactivity_timeout,
        )
    )
    return output.exit_code


def main(argv: Sequence[str] | None = None) -> int:
    argv_list = list(sys.argv[1:] if argv is None else argv)
    parsed = _build_parser().parse_args(argv_list)
    setup_logging()
    registry = RunnerRegistry(run_logger=RunLogger(parsed.log_file))
    handler = _run_agent if parsed.command == "agent" else _run_exec
    try:
        return asyncio.run(_with_signal_cancellation(handler(parsed, registry)))
    except AgentRunError as exc:
        print(json.dumps(exc.to_payload(), ensure_ascii=False, indent=2), file=sys.stderr)
        return EXIT_FAILURE
    except (asyncio.CancelledError, KeyboardInterrupt):
        interrupted = AgentRunError("INTERRUPTED", "Run interrupted by signal.")
        print(json.dumps(interrupted.to_payload(), ensure_ascii=False, indent=2), file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
