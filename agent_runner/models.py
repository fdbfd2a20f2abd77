"""
Data Models for the agent runner.

This module defines the Pydantic models shared across the runner:
- Termination plan snapshots (TerminationPlan)
- Agent results delivered through a result channel (AgentResult)
- Agent tool definitions and user overrides (AgentDefinition, AgentOverride)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class TerminationMode(str, Enum):
    """Whether a termination plan was executed or only recorded."""
    MOCK = "mock"
    REAL = "real"


class TerminationStrategy(str, Enum):
    """How the process tree of a run is signaled."""
    NO_PID = "no-pid"                  # Spawn failed or pid unknown: signal the handle
    WINDOWS = "windows"                # Native recursive tree kill
    PROCESS_GROUP = "process-group"    # Signal the negative group id
    DARWIN_TREE = "darwin-tree"        # Enumerate descendants and signal each
    CHILD_ONLY = "child-only"          # Signal the direct child only


class ResultDelivery(str, Enum):
    """How an agent hands its result back to the runner."""
    CALLBACK = "callback"
    FILE = "file"
    STDOUT = "stdout"


class TerminationPlan(BaseModel):
    """Immutable snapshot of one termination attempt."""
    model_config = ConfigDict(frozen=True)

    mode: TerminationMode
    platform: str
    signal: str
    strategy: TerminationStrategy
    pid: Optional[int] = None
    process_group_id: Optional[int] = None
    descendants: Optional[Tuple[int, ...]] = None


def utc_iso_now() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class AgentResult(BaseModel):
    """Result produced exactly once per successful run."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    result: Any
    received_at: str = Field(default_factory=utc_iso_now, serialization_alias="receivedAt")


class AgentDefinition(BaseModel):
    """Command line and delivery settings of one agent tool."""
    name: str
    cmd: List[str]
    aliases: List[str] = Field(default_factory=list)
    terminal: bool = False
    version_cmd: Optional[List[str]] = None
    result_delivery: ResultDelivery = ResultDelivery.CALLBACK
    grace_period_sec: Optional[float] = None
    requires_node: bool = False


class AgentOverride(BaseModel):
    """User-supplied agent entry; unset fields inherit from the built-in agent."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cmd: List[str] = Field(min_length=1)
    aliases: Optional[List[str]] = None
    terminal: Optional[bool] = None
    version_cmd: Optional[List[str]] = Field(default=None, alias="versionCmd")
    result_delivery: Optional[ResultDelivery] = Field(default=None, alias="resultDelivery")
    grace_period_sec: Optional[float] = Field(default=None, alias="gracePeriodSec")
