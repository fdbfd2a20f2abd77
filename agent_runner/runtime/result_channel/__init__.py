from __future__ import annotations

from .callback_server import AgentResultServer
from .contracts import ResultChannel
from .file_channel import FileResultChannel
from .payload import ResultValidator, parse_json_with_repair, parse_result_body

__all__ = [
    "AgentResultServer",
    "FileResultChannel",
    "ResultChannel",
    "ResultValidator",
    "parse_json_with_repair",
    "parse_result_body",
]
