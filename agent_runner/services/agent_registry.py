from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..errors import AgentConfigurationError
from ..models import AgentDefinition, AgentOverride, ResultDelivery

logger = logging.getLogger(__name__)

BUILTIN_AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(
        name="codex-cli",
        cmd=["npx", "--yes", "@openai/codex@latest", "exec", "--dangerously-bypass-approvals-and-sandbox"],
        aliases=["codex"],
        version_cmd=["npx", "--yes", "@openai/codex@latest", "--version"],
    ),
    AgentDefinition(
        name="claude-code",
        cmd=[
            "npx",
            "--yes",
            "@anthropic-ai/claude-code@latest",
            "--dangerously-skip-permissions",
            "--allowed-tools",
            "Bash,Edit,Write",
            "--print",
        ],
        aliases=["claude"],
        version_cmd=["npx", "--yes", "@anthropic-ai/claude-code@latest", "--version"],
    ),
    AgentDefinition(
        name="gemini-cli",
        # Non-interactive prompt mode stalls; drive the interactive mode through a terminal.
        cmd=["npx", "--yes", "@google/gemini-cli@latest", "--approval-mode", "yolo", "--prompt-interactive"],
        aliases=["gemini"],
        version_cmd=["npx", "--yes", "@google/gemini-cli@latest", "--version"],
        terminal=True,
        grace_period_sec=0.0,
    ),
    AgentDefinition(
        name="octofriend",
        cmd=["npx", "--yes", "octofriend@latest", "prompt"],
        aliases=["octo"],
        version_cmd=["npx", "--yes", "octofriend@latest", "version"],
        result_delivery=ResultDelivery.STDOUT,
        requires_node=True,
    ),
)


def _merge_override(name: str, entry: AgentOverride, base: Optional[AgentDefinition]) -> AgentDefinition:
    return AgentDefinition(
        name=name,
        cmd=list(entry.cmd),
        aliases=list(entry.aliases if entry.aliases is not None else (base.aliases if base else [])),
        terminal=entry.terminal if entry.terminal is not None else (base.terminal if base else False),
        version_cmd=entry.version_cmd if entry.version_cmd is not None else (base.version_cmd if base else None),
        result_delivery=(
            entry.result_delivery
            if entry.result_delivery is not None
            else (base.result_delivery if base else ResultDelivery.CALLBACK)
        ),
        grace_period_sec=(
            entry.grace_period_sec if entry.grace_period_sec is not None else (base.grace_period_sec if base else None)
        ),
        requires_node=base.requires_node if base else False,
    )


class AgentRegistry:
    """Agent definitions by name, with alias resolution."""

    def __init__(self, overrides: Optional[Mapping[str, Any]] = None) -> None:
        self._agents: Dict[str, AgentDefinition] = {agent.name: agent for agent in BUILTIN_AGENTS}
        for name, raw in (overrides or {}).items():
            try:
                entry = raw if isinstance(raw, AgentOverride) else AgentOverride.model_validate(raw)
            except ValidationError as exc:
                raise AgentConfigurationError(
                    f"Invalid agent entry '{name}': {exc.errors()[0].get('msg', 'invalid value')}",
                    {"agent": name},
                ) from exc
            self._agents[name] = _merge_override(name, entry, self._agents.get(name))
        self._aliases: Dict[str, str] = {}
        self._populate_aliases()

    def _populate_aliases(self) -> None:
        for agent in self._agents.values():
            for alias in agent.aliases:
                if alias in self._agents:
                    raise AgentConfigurationError(
                        f"Invalid agent alias '{alias}': conflicts with agent name '{alias}'.",
                        {"alias": alias},
                    )
                existing = self._aliases.get(alias)
                if existing:
                    raise AgentConfigurationError(
                        f"Invalid agent alias '{alias}': already assigned to '{existing}'.",
                        {"alias": alias, "agent": existing},
                    )
                self._aliases[alias] = agent.name

    def choices(self) -> List[str]:
        return list(self._agents.keys())

    def resolve_name(self, value: str) -> Optional[str]:
        normalized = value.strip()
        if normalized in self._agents:
            return normalized
        return self._aliases.get(normalized)

    def get(self, value: str) -> Optional[AgentDefinition]:
        name = self.resolve_name(value)
        return self._agents.get(name) if name else None

    def require(self, value: str) -> AgentDefinition:
        definition = self.get(value)
        if definition is None:
            raise AgentConfigurationError(
                f"Unknown agent '{value}'. Available agents: {', '.join(self.choices())}.",
                {"agent": value},
            )
        return definition

    def is_known(self, value: str) -> bool:
        return self.resolve_name(value) is not None

    def __iter__(self) -> Iterator[AgentDefinition]:
        return iter(self._agents.values())


def load_agent_overrides(path: str | Path) -> Dict[str, Any]:
    """Read the `agents` mapping from a YAML file."""
    config_path = Path(path)
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise AgentConfigurationError(f"Failed to read agent config {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise AgentConfigurationError(f"Agent config {config_path} must be a mapping.")
    agents = data.get("agents") or {}
    if not isinstance(agents, dict):
        raise AgentConfigurationError(f"'agents' in {config_path} must be a mapping.")
    logger.info("Loaded %d agent override(s) from %s", len(agents), config_path)
    return agents
