"""Nested, task-scoped logging context.

A `LogContext` carries the label prefix of the current run, the prefix shown
only in the shared aggregate log (`main_prefix`), additional run-scoped log
files and an optional override of the primary log file. Entering a child scope
merges the child into the ambient value: prefixes concatenate, extra log files
accumulate and the override replaces. Values are never mutated; each scope gets
a new merged value stored in a `ContextVar`, so the context follows awaited
continuations and is copied into tasks created inside the scope.
"""

from __future__ import annotations

import inspect
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LogContext:
    prefix: str | None = None
    main_prefix: str | None = None
    extra_log_paths: tuple[str, ...] = ()
    log_path: str | None = None

    def merge(self, child: LogContext) -> LogContext:
        return LogContext(
            prefix=merge_prefixes(self.prefix, child.prefix),
            main_prefix=merge_prefixes(self.main_prefix, child.main_prefix),
            extra_log_paths=_merge_log_paths(self.extra_log_paths, child.extra_log_paths),
            log_path=child.log_path if child.log_path is not None else self.log_path,
        )


_EMPTY_CONTEXT = LogContext()
_current_context: ContextVar[LogContext] = ContextVar("agent_runner_log_context", default=_EMPTY_CONTEXT)


def current_log_context() -> LogContext:
    return _current_context.get()


def build_log_context(
    *,
    prefix: str | None = None,
    main_prefix: str | None = None,
    extra_log_paths: Iterable[str | Any] | None = None,
    log_path: str | Any | None = None,
) -> LogContext:
    return LogContext(
        prefix=prefix,
        main_prefix=main_prefix,
        extra_log_paths=tuple(str(item) for item in (extra_log_paths or ())),
        log_path=str(log_path) if log_path is not None else None,
    )


@contextmanager
def log_context(partial: LogContext | None = None, **fields: Any) -> Iterator[LogContext]:
    """Merge `partial` (or keyword fields) into the ambient context for the block."""
    child = partial if partial is not None else build_log_context(**fields)
    merged = current_log_context().merge(child)
    token = _current_context.set(merged)
    try:
        yield merged
    finally:
        _current_context.reset(token)


def run_with_context(partial: LogContext, fn: Callable[[], T]) -> T:
    """Call `fn` inside a merged context.

    When `fn` returns an awaitable, the returned coroutine re-enters the merged
    context while it is awaited, so the whole asynchronous extent is covered.
    """
    merged = current_log_context().merge(partial)
    token = _current_context.set(merged)
    try:
        result = fn()
    finally:
        _current_context.reset(token)
    if inspect.isawaitable(result):
        return _await_in_context(merged, result)  # type: ignore[return-value]
    return result


async def _await_in_context(context: LogContext, awaitable: Any) -> Any:
    token = _current_context.set(context)
    try:
        return await awaitable
    finally:
        _current_context.reset(token)


def merge_prefixes(parent: str | None, child: str | None) -> str | None:
    if parent and child:
        return f"{parent} {child}"
    return parent or child


def apply_prefix(text: str, prefix: str | None) -> str:
    """Prefix every non-empty line of `text`."""
    if not prefix:
        return text
    normalized = prefix if prefix.endswith(" ") else f"{prefix} "
    return "\n".join(f"{normalized}{line}" if line else line for line in text.split("\n"))


def _merge_log_paths(parent: tuple[str, ...], child: tuple[str, ...]) -> tuple[str, ...]:
    merged: list[str] = []
    for item in (*parent, *child):
        if item not in merged:
            merged.append(item)
    return tuple(merged)
