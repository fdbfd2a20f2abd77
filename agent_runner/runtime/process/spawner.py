from __future__ import annotations

import asyncio
import codecs
import errno
import logging
import os
import re
import signal
import struct
import subprocess
from dataclasses import dataclass
from typing import Any, Callable

from ...config import config
from ..line_buffer import LineBuffer
from ..logging_context import LogContext, current_log_context
from ..run_logger import RunLogger
from ..types import ProcessOutput, RunRequest

logger = logging.getLogger(__name__)

SPAWN_FAILURE_EXIT_CODE = 1
_READ_CHUNK_SIZE = 1024
_ANSI_CSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def strip_ansi(text: str) -> str:
    return _ANSI_CSI_PATTERN.sub("", text)


def normalize_terminal_output(text: str) -> str:
    return text.replace("\r", "\n")


class RunHandle:
    """
    Kill capability and live exit state of one spawned process.

    Owned by the run that spawned it; only the termination planner signals it.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process | None,
        *,
        process_group_id: int | None = None,
        exit_code: int | None = None,
    ) -> None:
        self._process = process
        self.process_group_id = process_group_id
        self._synthetic_exit_code = exit_code
        self._killed = False
        self.finalizing: asyncio.Future[None] | None = None
        self.grace_cut = asyncio.Event()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def exit_code(self) -> int | None:
        if self._process is None:
            return self._synthetic_exit_code
        return self._process.returncode

    @property
    def killed(self) -> bool:
        return self._killed

    def kill(self, signal_name: str = "SIGTERM") -> bool:
        process = self._process
        if process is None or process.returncode is not None:
            return False
        try:
            if os.name == "nt":
                if signal_name == "SIGKILL":
                    process.kill()
                else:
                    process.terminate()
            else:
                process.send_signal(getattr(signal, signal_name))
        except ProcessLookupError:
            return False
        self._killed = True
        return True


@dataclass
class SpawnedProcess:
    handle: RunHandle
    exit: asyncio.Future[int]
    output: ProcessOutput
    context: LogContext


class _StreamSink:
    """Feed decoded text into the output accumulator and the run log."""

    def __init__(
        self,
        *,
        run_logger: RunLogger,
        output: ProcessOutput,
        context: LogContext,
        stream_to_console: bool,
        is_error: bool,
        on_output: Callable[[], None] | None,
        display_filter: Callable[[str], str] | None = None,
    ) -> None:
        self._output = output
        self._is_error = is_error
        self._on_output = on_output
        self._display_filter = display_filter
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = LineBuffer(
            lambda line: run_logger.write_chunk_with_context(line, stream_to_console, is_error, context)
        )

    def feed(self, chunk: bytes) -> None:
        if self._on_output is not None:
            self._on_output()
        self._write(self._decoder.decode(chunk))

    def close(self) -> None:
        self._write(self._decoder.decode(b"", final=True))
        self._buffer.flush()

    def _write(self, text: str) -> None:
        if not text:
            return
        self._output.append(text, is_error=self._is_error)
        display = self._display_filter(text) if self._display_filter is not None else text
        self._buffer.write(display)


async def spawn_process(
    request: RunRequest,
    run_logger: RunLogger,
    *,
    detached: bool = False,
    on_output: Callable[[], None] | None = None,
) -> SpawnedProcess:
    """
    Start `request` and return its handle, exit future and output accumulator.

    A process that cannot be started does not raise: its exit future resolves
    to a synthetic non-zero code and the reason is recorded as stderr output.
    """
    context = current_log_context()
    output = ProcessOutput()
    if request.terminal:
        return await _spawn_with_terminal(request, run_logger, context, output, detached, on_output)

    stdout_sink = _StreamSink(
        run_logger=run_logger,
        output=output,
        context=context,
        stream_to_console=request.stream,
        is_error=False,
        on_output=on_output,
    )
    stderr_sink = _StreamSink(
        run_logger=run_logger,
        output=output,
        context=context,
        stream_to_console=request.stream,
        is_error=True,
        on_output=on_output,
    )
    kwargs: dict[str, Any] = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "cwd": str(request.cwd),
        "env": _build_env(request),
    }
    kwargs.update(_detach_kwargs(detached))
    try:
        process = await asyncio.create_subprocess_exec(*request.argv, **kwargs)
    except (OSError, ValueError) as exc:
        return _spawn_failure(request, run_logger, context, output, exc)

    async def read_stream(stream: asyncio.StreamReader | None, sink: _StreamSink) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            sink.feed(chunk)

    readers = [
        asyncio.create_task(read_stream(process.stdout, stdout_sink)),
        asyncio.create_task(read_stream(process.stderr, stderr_sink)),
    ]

    async def supervise() -> int:
        returncode = await process.wait()
        await _drain_readers(readers, pid=process.pid)
        stdout_sink.close()
        stderr_sink.close()
        return returncode

    handle = RunHandle(process, process_group_id=_process_group_id(process.pid, detached))
    return SpawnedProcess(
        handle=handle,
        exit=asyncio.ensure_future(supervise()),
        output=output,
        context=context,
    )


async def _spawn_with_terminal(
    request: RunRequest,
    run_logger: RunLogger,
    context: LogContext,
    output: ProcessOutput,
    detached: bool,
    on_output: Callable[[], None] | None,
) -> SpawnedProcess:
    if os.name != "posix":
        return _spawn_failure(
            request,
            run_logger,
            context,
            output,
            RuntimeError("terminal emulation requires a POSIX pseudo-terminal"),
        )

    import pty

    sink = _StreamSink(
        run_logger=run_logger,
        output=output,
        context=context,
        stream_to_console=request.stream,
        is_error=False,
        on_output=on_output,
        display_filter=lambda text: normalize_terminal_output(strip_ansi(text)),
    )
    master_fd, slave_fd = pty.openpty()
    try:
        _set_window_size(slave_fd, int(config.RUNNER.TERMINAL_ROWS), int(config.RUNNER.TERMINAL_COLS))
        process = await asyncio.create_subprocess_exec(
            *request.argv,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=str(request.cwd),
            env=_build_env(request),
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        os.close(master_fd)
        return _spawn_failure(request, run_logger, context, output, exc)
    finally:
        try:
            os.close(slave_fd)
        except OSError:
            pass

    loop = asyncio.get_running_loop()
    eof: asyncio.Future[None] = loop.create_future()

    def on_readable() -> None:
        try:
            chunk = os.read(master_fd, 4096)
        except OSError as exc:
            if exc.errno not in {errno.EIO, errno.EBADF}:
                logger.warning("PTY read error for pid %s: %s", process.pid, exc)
            chunk = b""
        if not chunk:
            loop.remove_reader(master_fd)
            if not eof.done():
                eof.set_result(None)
            return
        sink.feed(chunk)

    loop.add_reader(master_fd, on_readable)

    async def read_terminal() -> None:
        try:
            await eof
        finally:
            loop.remove_reader(master_fd)

    reader = asyncio.create_task(read_terminal())

    async def supervise() -> int:
        returncode = await process.wait()
        await _drain_readers([reader], pid=process.pid)
        try:
            os.close(master_fd)
        except OSError:
            pass
        sink.close()
        return returncode

    # The pseudo-terminal child always leads its own session.
    handle = RunHandle(process, process_group_id=process.pid if detached else None)
    return SpawnedProcess(
        handle=handle,
        exit=asyncio.ensure_future(supervise()),
        output=output,
        context=context,
    )


def _spawn_failure(
    request: RunRequest,
    run_logger: RunLogger,
    context: LogContext,
    output: ProcessOutput,
    exc: BaseException,
) -> SpawnedProcess:
    message = f"Failed to start process: {exc}\n"
    output.append(message, is_error=True)
    run_logger.write_chunk_with_context(message, request.stream, True, context)
    logger.warning("Failed to start %s: %s", request.command, exc)
    loop = asyncio.get_running_loop()
    exit_future: asyncio.Future[int] = loop.create_future()
    exit_future.set_result(SPAWN_FAILURE_EXIT_CODE)
    return SpawnedProcess(
        handle=RunHandle(None, exit_code=SPAWN_FAILURE_EXIT_CODE),
        exit=exit_future,
        output=output,
        context=context,
    )


async def _drain_readers(readers: list[asyncio.Task[None]], *, pid: int | None) -> None:
    timeout = float(config.RUNNER.STREAM_DRAIN_TIMEOUT_SEC)
    try:
        await asyncio.wait_for(asyncio.gather(*readers, return_exceptions=True), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Stream readers for pid %s did not finish in time; cancelling", pid)
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)


def _build_env(request: RunRequest) -> dict[str, str]:
    env = os.environ.copy()
    env.update({str(key): str(value) for key, value in request.env.items()})
    return env


def _detach_kwargs(detached: bool) -> dict[str, Any]:
    if not detached:
        return {}
    if os.name == "nt":
        return {"creationflags": int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))}
    return {"start_new_session": True}


def _process_group_id(pid: int | None, detached: bool) -> int | None:
    if not detached or pid is None or os.name == "nt":
        return None
    return pid


def _set_window_size(fd: int, rows: int, cols: int) -> None:
    import fcntl
    import termios

    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
    except OSError:
        logger.debug("Failed to set terminal window size", exc_info=True)
