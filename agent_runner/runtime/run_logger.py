from __future__ import annotations

import logging
import sys
from pathlib import Path
from threading import Lock
from typing import Callable, TextIO, TypeVar

from .logging_context import (
    LogContext,
    apply_prefix,
    current_log_context,
    merge_prefixes,
    run_with_context,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _normalize_line(message: str) -> str:
    return message if message.endswith("\n") else f"{message}\n"


def format_prompt_for_log(prompt: str, limit: int) -> tuple[str, bool]:
    safe_limit = max(0, limit)
    if len(prompt) <= safe_limit:
        return prompt, False
    remaining = len(prompt) - safe_limit
    return f"{prompt[:safe_limit]}\n... [truncated {remaining} chars]", True


class RunLogger:
    """
    Attributes run output to the right destinations.

    Every emission is rendered twice:
    - the main line, prefixed with `main_prefix + prefix`, goes to the primary
      log file (context override or `log_path`) and to the console;
    - the base line, prefixed with `prefix` only, goes to the run-scoped extra
      log files. Without a `main_prefix` the extra files get the raw line.
    """

    def __init__(
        self,
        log_path: str | Path | None = None,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.log_path: str | None = str(log_path) if log_path is not None else None
        self.extra_log_paths: set[str] = set()
        self._stdout = stdout
        self._stderr = stderr
        self._write_lock = Lock()

    def info(self, message: str, *, console: bool = True) -> None:
        raw_line = _normalize_line(message)
        context = current_log_context()
        base_line, main_line = self._render(raw_line, context)
        if console:
            self._console(main_line, is_error=False)
        self._append_to_files(main_line=main_line, base_line=base_line, raw_line=raw_line, context=context)

    def error(self, message: str) -> None:
        raw_line = _normalize_line(message)
        context = current_log_context()
        base_line, main_line = self._render(raw_line, context)
        self._console(main_line, is_error=True)
        self._append_to_files(main_line=main_line, base_line=base_line, raw_line=raw_line, context=context)

    def write_chunk(self, chunk: str, stream_to_console: bool, is_error: bool) -> None:
        self.write_chunk_with_context(chunk, stream_to_console, is_error, current_log_context())

    def write_chunk_with_context(
        self,
        chunk: str,
        stream_to_console: bool,
        is_error: bool,
        context: LogContext,
    ) -> None:
        if not chunk:
            return
        base_text, main_text = self._render(chunk, context)
        if stream_to_console:
            self._console(main_text, is_error=is_error)
        self._append_to_files(main_line=main_text, base_line=base_text, raw_line=chunk, context=context)

    def log_prompt(self, label: str, prompt: str, limit: int = 4000) -> None:
        text, truncated = format_prompt_for_log(prompt, limit)
        length_label = "truncated" if truncated else "full"
        self.info(f"{label} ({len(prompt)} chars, {length_label}):\n{text}")
        if truncated:
            self.info(f"{label} (full {len(prompt)} chars):\n{prompt}", console=False)

    def run_with_context(self, context: LogContext, fn: Callable[[], T]) -> T:
        return run_with_context(context, fn)

    def context_snapshot(self) -> LogContext:
        return current_log_context()

    def _render(self, text: str, context: LogContext) -> tuple[str, str]:
        base = apply_prefix(text, context.prefix)
        main = apply_prefix(text, merge_prefixes(context.main_prefix, context.prefix))
        return base, main

    def _console(self, text: str, *, is_error: bool) -> None:
        stream = (self._stderr or sys.stderr) if is_error else (self._stdout or sys.stdout)
        stream.write(text)
        stream.flush()

    def _append_to_files(
        self,
        *,
        main_line: str,
        base_line: str,
        raw_line: str,
        context: LogContext,
    ) -> None:
        main_log_path = context.log_path or self.log_path
        extra_line = base_line if context.main_prefix else raw_line
        extra_paths = [*sorted(self.extra_log_paths), *context.extra_log_paths]
        with self._write_lock:
            if main_log_path:
                self._append(main_log_path, main_line)
            seen: set[str] = set()
            for path in extra_paths:
                if path in seen:
                    continue
                seen.add(path)
                self._append(path, extra_line)

    def _append(self, path: str, text: str) -> None:
        try:
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as stream:
                stream.write(text)
        except OSError:
            logger.warning("Failed to append run log to %s", path, exc_info=True)
