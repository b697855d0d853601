from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from basilisk_lsp.exceptions import TransportError
from basilisk_lsp.framing import FrameDecoder
from basilisk_lsp.invariants import never
from basilisk_lsp.json_types import JSONObject

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]

_READ_SIZE = 65536
_TERMINATE_GRACE_SECONDS = 1.0


class ProcessTransport:
    """Owns one long-lived child process speaking framed JSON-RPC on stdio.

    Writes are fire-and-forget; decoded frames are handed to ``on_frame`` in
    arrival order. ``on_exit`` fires once when the process dies on its own,
    after every frame it wrote has been delivered; it does not fire for a
    shutdown started through :meth:`terminate`.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        on_frame: Callable[[JSONObject], None],
        on_exit: Callable[[int | None], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        if not command:
            never("empty transport command")
        self._command = list(command)
        self._on_frame = on_frame
        self._on_exit = on_exit
        self._on_stderr = on_stderr
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._decoder = FrameDecoder()
        self._process: asyncio.subprocess.Process | None = None
        self._closing = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._closing
        )

    @property
    def pid(self) -> int | None:
        return None if self._process is None else self._process.pid

    async def start(self) -> None:
        if self._process is not None:
            never("transport already started", command=self._command[0])
        try:
            self._process = await self._process_factory(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"Failed to start {self._command[0]}: {exc}") from exc
        logger.debug("Spawned %s (pid %s)", self._command[0], self._process.pid)
        stdout_task = asyncio.create_task(self._read_stdout())
        self._tasks = [
            stdout_task,
            asyncio.create_task(self._read_stderr()),
            asyncio.create_task(self._watch_exit(stdout_task)),
        ]

    def send(self, payload: bytes) -> None:
        process = self._process
        if process is None or process.stdin is None or self._closing:
            logger.debug("Dropping %d bytes for a stopped process", len(payload))
            return
        try:
            process.stdin.write(payload)
        except OSError as exc:
            logger.warning("Write to %s failed: %s", self._command[0], exc)

    async def terminate(self) -> None:
        process = self._process
        if process is None:
            return
        self._closing = True
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                logger.debug("stdin already closed for %s", self._command[0])
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), _TERMINATE_GRACE_SECONDS)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("%s ignored SIGTERM, killing", self._command[0])
                process.kill()
                await process.wait()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks)
        self._tasks = []
        self._process = None

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        while True:
            chunk = await process.stdout.read(_READ_SIZE)
            if not chunk:
                return
            for message in self._decoder.feed(chunk):
                try:
                    self._on_frame(message)
                except Exception:
                    logger.exception("Frame handler failed for %s", self._command[0])

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            if self._on_stderr is not None:
                self._on_stderr(line.decode("utf-8", errors="replace"))

    async def _watch_exit(self, stdout_task: asyncio.Task[None]) -> None:
        process = self._process
        if process is None:
            return
        await asyncio.wait([stdout_task])
        if not stdout_task.cancelled():
            read_error = stdout_task.exception()
            if read_error is not None:
                logger.error("Reading from %s failed", self._command[0], exc_info=read_error)
        returncode = await process.wait()
        if self._closing:
            return
        self._closing = True
        self._process = None
        if self._on_exit is not None:
            self._on_exit(returncode)
