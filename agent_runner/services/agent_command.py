from __future__ import annotations

from dataclasses import dataclass

from ..errors import AgentConfigurationError
from ..models import AgentDefinition
from ..runtime.registry import RuntimeResolver

_NPX_ASSUME_YES = {"--yes", "-y"}


@dataclass(frozen=True)
class AgentCommand:
    command: str
    args: tuple[str, ...]
    terminal: bool = False


def build_agent_command(definition: AgentDefinition, prompt: str, runtime: RuntimeResolver) -> AgentCommand:
    """Append `prompt` to the agent command line.

    `npx` launches fall back to `bunx --bun` when no Node.js runtime is
    installed, unless the agent needs Node itself.
    """
    if not definition.cmd:
        raise AgentConfigurationError(f"Agent '{definition.name}' has an empty command.")
    if definition.requires_node and not runtime.has_node_runtime():
        raise AgentConfigurationError(f"{definition.name} requires Node.js to be installed.")

    command, *args = definition.cmd
    if command == "npx" and not definition.requires_node:
        runner = runtime.package_runner()
        if runner.command != "npx":
            if args and args[0] in _NPX_ASSUME_YES:
                args = args[1:]
            command = runner.command
            args = [*runner.args_prefix, *args]
    return AgentCommand(command=command, args=(*args, prompt), terminal=definition.terminal)
