import asyncio

import pytest

from agent_runner.runtime.logging_context import (
    LogContext,
    apply_prefix,
    current_log_context,
    log_context,
    merge_prefixes,
    run_with_context,
)
from agent_runner.runtime.run_logger import RunLogger, format_prompt_for_log


def test_merge_prefixes_and_apply_prefix():
    assert merge_prefixes("[run-1]", "[3]") == "[run-1] [3]"
    assert merge_prefixes(None, "[3]") == "[3]"
    assert merge_prefixes("[run-1]", None) == "[run-1]"
    assert apply_prefix("a\n\nb\n", "[3]") == "[3] a\n\n[3] b\n"
    assert apply_prefix("a\n", None) == "a\n"


def test_nested_contexts_merge_and_restore():
    with log_context(prefix="[run-1]", extra_log_paths=["a.log"]):
        with log_context(prefix="[3]", extra_log_paths=["b.log", "a.log"], log_path="override.log") as merged:
            assert merged.prefix == "[run-1] [3]"
            assert merged.extra_log_paths == ("a.log", "b.log")
            assert merged.log_path == "override.log"
        assert current_log_context().prefix == "[run-1]"
        assert current_log_context().log_path is None
    assert current_log_context() == LogContext()


@pytest.mark.asyncio
async def test_context_follows_awaits_and_tasks():
    seen = []

    async def worker(name: str) -> None:
        await asyncio.sleep(0.01)
        seen.append((name, current_log_context().prefix))

    async def run(name: str) -> None:
        with log_context(prefix=f"[{name}]"):
            await asyncio.sleep(0)
            await asyncio.create_task(worker(name))

    await asyncio.gather(run("a"), run("b"))
    assert sorted(seen) == [("a", "[a]"), ("b", "[b]")]


@pytest.mark.asyncio
async def test_run_with_context_covers_async_extent():
    async def body() -> str:
        await asyncio.sleep(0)
        return current_log_context().prefix

    assert await run_with_context(LogContext(prefix="[7]"), body) == "[7]"
    assert current_log_context().prefix is None


def test_dual_prefix_view_between_main_and_extra_destinations(tmp_path, console):
    stdout, _ = console
    main_log = tmp_path / "main.log"
    run_log = tmp_path / "run-1.log"
    logger = RunLogger(main_log, stdout=stdout)

    with log_context(main_prefix="[run-1]", extra_log_paths=[str(run_log)]):
        with log_context(prefix="[3]"):
            logger.info("hello")

    assert main_log.read_text(encoding="utf-8") == "[run-1] [3] hello\n"
    assert run_log.read_text(encoding="utf-8") == "[3] hello\n"
    assert stdout.getvalue() == "[run-1] [3] hello\n"


def test_extra_destination_gets_raw_line_without_main_prefix(tmp_path, console):
    stdout, _ = console
    main_log = tmp_path / "main.log"
    run_log = tmp_path / "run.log"
    logger = RunLogger(main_log, stdout=stdout)

    with log_context(prefix="[3]", extra_log_paths=[str(run_log)]):
        logger.write_chunk("line\n", False, False)

    assert main_log.read_text(encoding="utf-8") == "[3] line\n"
    assert run_log.read_text(encoding="utf-8") == "line\n"
    assert stdout.getvalue() == ""


def test_destination_override_replaces_primary_log(tmp_path, console):
    stdout, stderr = console
    main_log = tmp_path / "main.log"
    override = tmp_path / "override.log"
    logger = RunLogger(main_log, stdout=stdout, stderr=stderr)

    with log_context(log_path=str(override)):
        logger.error("boom")

    assert not main_log.exists()
    assert override.read_text(encoding="utf-8") == "boom\n"
    assert stderr.getvalue() == "boom\n"


def test_log_prompt_truncates_console_but_keeps_full_prompt_in_file(tmp_path, console):
    stdout, _ = console
    main_log = tmp_path / "main.log"
    logger = RunLogger(main_log, stdout=stdout)
    prompt = "x" * 30

    logger.log_prompt("Prompt", prompt, limit=10)

    assert "... [truncated 20 chars]" in stdout.getvalue()
    assert prompt not in stdout.getvalue()
    assert prompt in main_log.read_text(encoding="utf-8")
    assert format_prompt_for_log("short", 10) == ("short", False)


def test_context_snapshot_reflects_active_scope(tmp_path):
    logger = RunLogger(tmp_path / "main.log")

    with log_context(prefix="[1]", main_prefix="[job]"):
        snapshot = logger.context_snapshot()

    assert snapshot.prefix == "[1]"
    assert snapshot.main_prefix == "[job]"
    assert logger.context_snapshot().prefix is None
