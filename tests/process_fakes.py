from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Callable

from basilisk_lsp.framing import (
    FrameDecoder,
    encode_frame,
    notification_message,
    request_message,
    response_message,
)
from basilisk_lsp.json_types import JSONObject, JSONValue

_PIDS = itertools.count(4000)

Responder = Callable[[JSONValue], JSONValue]


class _FakeStdin:
    def __init__(self, on_message: Callable[[JSONObject], None]) -> None:
        self._decoder = FrameDecoder()
        self._on_message = on_message
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        for message in self._decoder.feed(data):
            self._on_message(message)

    def close(self) -> None:
        self.closed = True


class FakeClangdProcess:
    """Scripted clangd speaking framed JSON-RPC over in-memory pipes.

    ``initialize`` and ``shutdown`` are answered automatically unless
    ``auto_initialize`` is off; other requests are answered from
    ``responses`` or left pending. With ``diagnostics_on_open`` every
    ``didOpen`` is answered by a publishDiagnostics push.
    """

    def __init__(
        self,
        *,
        auto_initialize: bool = True,
        server_info: JSONObject | None = None,
        responses: dict[str, JSONValue | Responder] | None = None,
        diagnostics_on_open: list[JSONObject] | None = None,
    ) -> None:
        self.pid = next(_PIDS)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = _FakeStdin(self._handle)
        self.received: list[JSONObject] = []
        self.responses: dict[str, JSONValue | Responder] = dict(responses or {})
        self._auto_initialize = auto_initialize
        self._diagnostics_on_open = diagnostics_on_open
        self._server_info = server_info if server_info is not None else {"name": "clangd", "version": "17.0.0"}
        self._exited = asyncio.Event()
        self._next_request_id = 1000

    def _handle(self, message: JSONObject) -> None:
        self.received.append(message)
        method = message.get("method")
        if method == "textDocument/didOpen" and self._diagnostics_on_open is not None:
            document = message["params"]["textDocument"]
            self.publish(document["uri"], self._diagnostics_on_open, document.get("version"))
        if not isinstance(method, str) or "id" not in message:
            return
        request_id = message["id"]
        if method == "initialize":
            if self._auto_initialize:
                self.reply(request_id, {"capabilities": {}, "serverInfo": self._server_info})
            return
        if method == "shutdown":
            self.reply(request_id, None)
            return
        if method in self.responses:
            response = self.responses[method]
            self.reply(request_id, response(message.get("params")) if callable(response) else response)

    def methods(self) -> list[str]:
        return [str(message.get("method")) for message in self.received if "method" in message]

    def requests(self, method: str) -> list[JSONObject]:
        return [message for message in self.received if message.get("method") == method and "id" in message]

    def responses_sent(self) -> list[JSONObject]:
        return [message for message in self.received if "method" not in message]

    def reply(self, request_id: JSONValue, result: JSONValue) -> None:
        self.feed(encode_frame(response_message(request_id, result)))

    def reply_error(self, request_id: JSONValue, code: int, message: str) -> None:
        self.feed(
            encode_frame({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})
        )

    def notify(self, method: str, params: JSONValue = None) -> None:
        self.feed(encode_frame(notification_message(method, params)))

    def ask(self, method: str, params: JSONValue = None) -> int:
        request_id = self._next_request_id
        self._next_request_id += 1
        self.feed(encode_frame(request_message(request_id, method, params)))
        return request_id

    def publish(self, uri: str, diagnostics: list[JSONObject], version: int | None = None) -> None:
        params: JSONObject = {"uri": uri, "diagnostics": diagnostics}
        if version is not None:
            params["version"] = version
        self.notify("textDocument/publishDiagnostics", params)

    def feed(self, data: bytes) -> None:
        if self.returncode is None:
            self.stdout.feed_data(data)

    def crash(self, code: int = 1) -> None:
        self._exit(code)

    def terminate(self) -> None:
        self._exit(-15)

    def kill(self) -> None:
        self._exit(-9)

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode

    def _exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()


class FakeClangdFactory:
    def __init__(self, **process_options: object) -> None:
        self._process_options = process_options
        self.commands: list[list[str]] = []
        self.processes: list[FakeClangdProcess] = []

    async def __call__(self, *command: str, **_kwargs: object) -> FakeClangdProcess:
        self.commands.append(list(command))
        process = FakeClangdProcess(**self._process_options)  # type: ignore[arg-type]
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeClangdProcess:
        return self.processes[-1]


class FailingFactory:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, *command: str, **_kwargs: object) -> FakeClangdProcess:
        self.calls += 1
        raise FileNotFoundError(command[0])


class FakeCommandProcess:
    """One-shot process whose ``communicate`` returns canned output or never finishes."""

    def __init__(self, *, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, hang: bool = False) -> None:
        self.pid = next(_PIDS)
        self.returncode: int | None = None
        self._stdout = stdout
        self._stderr = stderr
        self._final_returncode = returncode
        self._hang = hang
        self._killed = asyncio.Event()
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        if self._hang:
            await self._killed.wait()
            return b"", b""
        self.returncode = self._final_returncode
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self._killed.set()

    async def wait(self) -> int | None:
        return self.returncode


class FakeCommandFactory:
    """Records each spawn; ``on_spawn`` sees argv and the working directory while it still exists."""

    def __init__(
        self,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        hang: bool = False,
        on_spawn: Callable[[list[str], Path | None], None] | None = None,
    ) -> None:
        self._options = {"stdout": stdout, "stderr": stderr, "returncode": returncode, "hang": hang}
        self._on_spawn = on_spawn
        self.calls: list[tuple[list[str], dict[str, object]]] = []
        self.processes: list[FakeCommandProcess] = []

    async def __call__(self, *argv: str, **kwargs: object) -> FakeCommandProcess:
        self.calls.append((list(argv), dict(kwargs)))
        cwd = kwargs.get("cwd")
        if self._on_spawn is not None:
            self._on_spawn(list(argv), Path(str(cwd)) if cwd else None)
        process = FakeCommandProcess(**self._options)  # type: ignore[arg-type]
        self.processes.append(process)
        return process


def forbid_spawn(*_args: object, **_kwargs: object) -> FakeClangdProcess:
    raise AssertionError("no process may be spawned here")
