from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping


@dataclass(frozen=True)
class RunRequest:
    """Immutable description of one external process run."""

    command: str
    args: tuple[str, ...] = ()
    cwd: str | Path = "."
    env: Mapping[str, str] = field(default_factory=dict)
    stream: bool = False
    terminal: bool = False
    throw_on_error: bool = False
    inactivity_timeout_sec: float | None = None
    grace_period_sec: float | None = None

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


class ProcessOutput:
    """Accumulated stream output of a spawned process."""

    def __init__(self) -> None:
        self.stdout = ""
        self.stderr = ""
        self.combined = ""

    def append(self, text: str, *, is_error: bool) -> None:
        if not text:
            return
        if is_error:
            self.stderr += text
        else:
            self.stdout += text
        self.combined += text


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    combined: str
    exit_code: int
