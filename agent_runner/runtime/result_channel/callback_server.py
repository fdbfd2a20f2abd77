from __future__ import annotations

import asyncio
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Event, Lock, Thread
from typing import Any, Optional
from urllib.parse import urlsplit

from ...config import config
from ...errors import InvalidResultPayloadError, ResultChannelError
from ...models import AgentResult
from .payload import ResultValidator

logger = logging.getLogger(__name__)


class _ReusableThreadingHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True


def _read_chunked(rfile: Any) -> bytes:
    body = bytearray()
    while True:
        size_line = rfile.readline()
        if not size_line:
            raise ValueError("unexpected end of chunked body")
        size = int(size_line.split(b";", 1)[0].strip() or b"0", 16)
        if size == 0:
            # Trailer section ends with an empty line.
            while rfile.readline() not in (b"\r\n", b"\n", b""):
                pass
            return bytes(body)
        chunk = rfile.read(size)
        if len(chunk) != size:
            raise ValueError("truncated chunk")
        body.extend(chunk)
        rfile.readline()


class AgentResultServer:
    """
    One-shot loopback HTTP listener an agent POSTs its result to.

    Invalid bodies are answered with 400 and leave the result pending so the
    agent can resubmit. The first valid body resolves the result, is answered
    with 200 "ok" and shuts the listener down; anything arriving in between
    gets 410.
    """

    def __init__(
        self,
        validator: Optional[ResultValidator] = None,
        *,
        host: Optional[str] = None,
        port: int = 0,
        path: Optional[str] = None,
    ) -> None:
        self._validator = validator or ResultValidator()
        self._host = host or str(config.RUNNER.CALLBACK_HOST)
        self._port = int(port)
        self._bound_port = self._port
        self._path = path or str(config.RUNNER.CALLBACK_PATH)
        self._server: _ReusableThreadingHTTPServer | None = None
        self._thread: Thread | None = None
        self._lock = Lock()
        self._started = False
        self._stopped = Event()
        self._accepted = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._result: asyncio.Future[AgentResult] | None = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._bound_port}{self._path}"

    async def start(self) -> str:
        if self._started:
            return self.url
        self._loop = asyncio.get_running_loop()
        self._result = self._loop.create_future()

        owner = self
        callback_path = self._path

        class ResultHandler(BaseHTTPRequestHandler):
            def do_POST(self) -> None:  # noqa: N802
                if urlsplit(self.path).path != callback_path:
                    self._respond(404, "Not Found")
                    return
                if owner._accepted:
                    self._respond(410, "Result already received.")
                    return
                try:
                    body = self._read_body()
                except (OSError, ValueError) as exc:
                    logger.error("Result server request error: %s", exc)
                    self._respond(400, "Invalid request stream.")
                    owner._reject(ResultChannelError(f"Invalid request stream: {exc}"))
                    return
                try:
                    value = owner._validator.parse_and_validate(
                        self.headers.get("Content-Type"),
                        body.decode("utf-8", errors="replace"),
                    )
                except InvalidResultPayloadError as exc:
                    logger.info("Rejected agent result: %s", exc.message)
                    self._respond(400, exc.message)
                    return
                if not owner._accept(value):
                    self._respond(410, "Result already received.")
                    return
                self._respond(200, "ok")
                Thread(target=owner._stop, daemon=True, name="agent-result-shutdown").start()

            def do_GET(self) -> None:  # noqa: N802
                self._respond(405, "Method Not Allowed")

            do_PUT = do_GET
            do_PATCH = do_GET
            do_DELETE = do_GET
            do_OPTIONS = do_GET

            def do_HEAD(self) -> None:  # noqa: N802
                self._respond(405, "Method Not Allowed", include_body=False)

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                return

            def _read_body(self) -> bytes:
                if "chunked" in (self.headers.get("Transfer-Encoding") or "").lower():
                    return _read_chunked(self.rfile)
                length = int(self.headers.get("Content-Length") or 0)
                if length <= 0:
                    return b""
                body = self.rfile.read(length)
                if len(body) != length:
                    raise ValueError("request body ended early")
                return body

            def _respond(self, status: int, message: str, *, include_body: bool = True) -> None:
                encoded = message.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                if include_body:
                    self.wfile.write(encoded)
                self.wfile.flush()

        try:
            server = _ReusableThreadingHTTPServer((self._host, self._port), ResultHandler)
        except OSError as exc:
            raise ResultChannelError(
                f"Failed to start result server on {self._host}:{self._port}: {exc}",
                {"host": self._host, "port": self._port},
            ) from exc

        thread = Thread(target=server.serve_forever, daemon=True, name="agent-result-server")
        thread.start()
        with self._lock:
            self._server = server
            self._thread = thread
            self._bound_port = int(server.server_port)
            self._started = True
        logger.info("Result server listening at %s", self.url)
        return self.url

    async def wait_for_result(self) -> AgentResult:
        if self._result is None:
            raise ResultChannelError("Result server is not started.")
        return await asyncio.shield(self._result)

    async def on_process_exit(self) -> Optional[AgentResult]:
        future = self._result
        if future is None:
            return None
        if self._accepted and not future.done():
            # Accepted on the handler thread; the settle callback is already queued.
            await asyncio.sleep(0)
        if future.done() and not future.cancelled() and future.exception() is None:
            return future.result()
        return None

    async def close(self) -> None:
        await asyncio.to_thread(self._stop)

    def _accept(self, value: Any) -> bool:
        with self._lock:
            if self._accepted:
                return False
            self._accepted = True
        result = AgentResult(result=value)
        self._settle(lambda future: future.set_result(result))
        return True

    def _reject(self, error: Exception) -> None:
        with self._lock:
            if self._accepted:
                return
            self._accepted = True
        self._settle(lambda future: future.set_exception(error))
        Thread(target=self._stop, daemon=True, name="agent-result-shutdown").start()

    def _settle(self, apply: Any) -> None:
        loop = self._loop
        future = self._result
        if loop is None or future is None:
            return

        def settle() -> None:
            if not future.done():
                apply(future)

        try:
            loop.call_soon_threadsafe(settle)
        except RuntimeError:
            logger.warning("Result arrived after the event loop closed")

    def _stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            server = self._server
            thread = self._thread
            self._server = None
            self._thread = None
        if server is None:
            self._stopped.wait(timeout=2.0)
            return
        try:
            server.shutdown()
            server.server_close()
        finally:
            if thread is not None:
                thread.join(timeout=1.0)
            self._stopped.set()
