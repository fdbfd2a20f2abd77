from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class AgentRunError(Exception):
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class PrematureExitError(AgentRunError):
    def __init__(self, exit_code: int | None) -> None:
        label = "unknown" if exit_code is None else exit_code
        super().__init__(
            "PREMATURE_EXIT",
            f"Agent exited before posting a result (exit {label}).",
            {"exit_code": exit_code},
        )


class InactivityTimeoutError(AgentRunError):
    def __init__(self, timeout_sec: float) -> None:
        super().__init__(
            "INACTIVITY_TIMEOUT",
            f"No output received for {timeout_sec:g}s; terminating process.",
            {"timeout_sec": timeout_sec},
        )


class InvalidResultPayloadError(AgentRunError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_RESULT_PAYLOAD", message, dict(details or {}))


class ResultChannelError(AgentRunError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("RESULT_CHANNEL_FAILED", message, dict(details or {}))


class CommandFailedError(AgentRunError):
    def __init__(self, message: str, exit_code: int | None) -> None:
        super().__init__("COMMAND_FAILED", message, {"exit_code": exit_code})


class AgentConfigurationError(AgentRunError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("AGENT_CONFIGURATION_INVALID", message, dict(details or {}))


class AgentOutputError(AgentRunError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("AGENT_OUTPUT_UNUSABLE", message, dict(details or {}))
