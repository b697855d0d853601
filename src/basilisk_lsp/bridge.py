from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable

from basilisk_lsp.exceptions import (
    BasiliskLspError,
    BridgeNotReadyError,
    ProcessExitedError,
    TransportError,
)
from basilisk_lsp.json_types import JSONArray, JSONObject, JSONValue
from basilisk_lsp.protocol import ProtocolSession
from basilisk_lsp.transport import ProcessFactory, ProcessTransport

logger = logging.getLogger(__name__)

DiagnosticsCallback = Callable[[str, JSONArray, int | None], None]

SHUTDOWN_TIMEOUT_SECONDS = 2.0
INITIALIZE_TIMEOUT_SECONDS = 30.0

DEFAULT_CLIENT_CAPABILITIES: JSONObject = {
    "textDocument": {
        "synchronization": {"didSave": True, "dynamicRegistration": False},
        "publishDiagnostics": {"relatedInformation": True, "versionSupport": True},
        "completion": {
            "completionItem": {"snippetSupport": False, "documentationFormat": ["markdown", "plaintext"]}
        },
        "hover": {"contentFormat": ["markdown", "plaintext"]},
        "definition": {"linkSupport": False},
        "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
    },
    "workspace": {"configuration": True, "workspaceFolders": True},
}


class BridgeState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


@dataclass(frozen=True)
class BridgeConfig:
    path: str
    args: tuple[str, ...] = ()
    compile_commands_dir: str = ""
    fallback_flags: tuple[str, ...] = ()
    root_uri: str | None = None
    workspace_folders: tuple[tuple[str, str], ...] = field(default=(), compare=False)

    @property
    def command(self) -> list[str]:
        return [self.path, *self.args]

    def fingerprint(self) -> str:
        # root_uri and workspace folders never force a restart.
        return json.dumps(
            {
                "path": self.path,
                "args": list(self.args),
                "compileCommandsDir": self.compile_commands_dir,
                "fallbackFlags": list(self.fallback_flags),
            },
            sort_keys=True,
        )


class ClangdBridge:
    """Lifecycle of one clangd process: spawn, handshake, request routing, stop.

    Notifications sent before the ``initialize`` response has arrived are
    queued and flushed in order right after ``initialized``; nothing reaches
    clangd's stdin ahead of the handshake except ``initialize`` itself.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        capabilities: JSONObject | None = None,
        on_diagnostics: DiagnosticsCallback | None = None,
        on_log: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
        on_exit: Callable[[int | None], None] | None = None,
        process_factory: ProcessFactory | None = None,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
        initialize_timeout: float | None = INITIALIZE_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self._capabilities = capabilities if capabilities is not None else DEFAULT_CLIENT_CAPABILITIES
        self._on_diagnostics = on_diagnostics
        self._on_log = on_log
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._process_factory = process_factory
        self._shutdown_timeout = shutdown_timeout
        self._initialize_timeout = initialize_timeout
        self._state = BridgeState.STOPPED
        self._transport: ProcessTransport | None = None
        self._protocol: ProtocolSession | None = None
        self._queue: list[tuple[str, JSONValue]] = []
        self._started: asyncio.Future[bool] | None = None
        self.server_info: JSONObject | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is BridgeState.READY

    @property
    def pending_count(self) -> int:
        return 0 if self._protocol is None else self._protocol.pending_count

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def pid(self) -> int | None:
        return None if self._transport is None else self._transport.pid

    async def start(self) -> bool:
        if self._state is BridgeState.READY:
            return True
        if self._state is not BridgeState.STOPPED:
            logger.debug("clangd bridge start ignored in state %s", self._state)
            return False
        self._state = BridgeState.STARTING
        self._started = asyncio.get_running_loop().create_future()
        transport = ProcessTransport(
            self.config.command,
            on_frame=self._handle_frame,
            on_exit=self._handle_exit,
            on_stderr=self._handle_stderr,
            process_factory=self._process_factory,
        )
        protocol = ProtocolSession(
            transport.send,
            notification_handlers={
                "textDocument/publishDiagnostics": self._handle_publish_diagnostics,
                "window/logMessage": self._handle_log_message,
                "window/showMessage": self._handle_log_message,
            },
        )
        self._transport = transport
        self._protocol = protocol
        try:
            await transport.start()
        except TransportError as exc:
            logger.error("%s", exc)
            self._reset()
            return False
        if self._state is not BridgeState.STARTING:
            await transport.terminate()
            return False

        try:
            result = await asyncio.wait_for(
                protocol.request("initialize", self._initialize_params()),
                self._initialize_timeout,
            )
        except (BasiliskLspError, asyncio.TimeoutError) as exc:
            logger.error("clangd initialize failed: %s", exc or "timed out")
            if self._state is BridgeState.STARTING:
                await transport.terminate()
                self._reset()
            return False
        if self._state is not BridgeState.STARTING:
            return False

        self._state = BridgeState.READY
        protocol.notify("initialized", {})
        queued, self._queue = self._queue, []
        for method, params in queued:
            protocol.notify(method, params)
        self.server_info = _server_info(result)
        if self.server_info is not None:
            logger.info(
                "clangd initialized (%s %s)",
                self.server_info.get("name"),
                self.server_info.get("version", ""),
            )
        else:
            logger.info("clangd initialized")
        self._settle_started(True)
        return True

    async def stop(self) -> None:
        if self._state is BridgeState.STOPPED:
            self._queue.clear()
            return
        if self._state is BridgeState.STOPPING:
            return
        was_ready = self._state is BridgeState.READY
        self._state = BridgeState.STOPPING
        transport = self._transport
        protocol = self._protocol
        if protocol is not None and was_ready:
            try:
                await asyncio.wait_for(protocol.request("shutdown"), self._shutdown_timeout)
            except (BasiliskLspError, asyncio.TimeoutError) as exc:
                logger.debug("clangd shutdown request failed: %s", exc or "timed out")
            protocol.notify("exit")
        if transport is not None:
            await transport.terminate()
        if protocol is not None:
            protocol.reject_all(ProcessExitedError())
        self._reset()

    async def request(
        self, method: str, params: JSONValue = None, *, timeout: float | None = None
    ) -> JSONValue:
        if self._state is BridgeState.STARTING and self._started is not None:
            if not await asyncio.shield(self._started):
                raise BridgeNotReadyError(f"clangd failed to start; cannot send {method}")
        protocol = self._protocol
        if self._state is not BridgeState.READY or protocol is None:
            raise BridgeNotReadyError(f"clangd is not running ({self._state}); cannot send {method}")
        future = protocol.request(method, params)
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout)

    def notify(self, method: str, params: JSONValue = None) -> None:
        if self._state is BridgeState.READY and self._protocol is not None:
            self._protocol.notify(method, params)
            return
        if self._state is BridgeState.STOPPING:
            logger.debug("Dropping %s sent while clangd is stopping", method)
            return
        self._queue.append((method, params))

    def _initialize_params(self) -> JSONObject:
        params: JSONObject = {
            "processId": os.getpid(),
            "rootUri": self.config.root_uri,
            "capabilities": self._capabilities,
            "initializationOptions": {"fallbackFlags": list(self.config.fallback_flags)},
        }
        if self.config.workspace_folders:
            params["workspaceFolders"] = [
                {"uri": uri, "name": name} for uri, name in self.config.workspace_folders
            ]
        return params

    def _reset(self) -> None:
        self._transport = None
        self._protocol = None
        self._queue.clear()
        self._state = BridgeState.STOPPED
        self._settle_started(False)

    def _settle_started(self, ready: bool) -> None:
        if self._started is not None and not self._started.done():
            self._started.set_result(ready)

    def _handle_frame(self, message: JSONObject) -> None:
        if self._protocol is not None:
            self._protocol.handle_message(message)

    def _handle_exit(self, returncode: int | None) -> None:
        protocol = self._protocol
        if protocol is not None:
            protocol.reject_all(ProcessExitedError(returncode=returncode))
        self._queue.clear()
        if self._state is BridgeState.STOPPING:
            return
        logger.warning("clangd exited (code %s)", returncode)
        self._reset()
        if self._on_exit is not None:
            self._on_exit(returncode)

    def _handle_stderr(self, line: str) -> None:
        if self._on_stderr is not None:
            self._on_stderr(line)
            return
        logger.debug("clangd: %s", line.rstrip())

    def _handle_publish_diagnostics(self, params: JSONValue) -> None:
        if not isinstance(params, dict) or self._on_diagnostics is None:
            return
        uri = params.get("uri")
        if not isinstance(uri, str):
            return
        diagnostics = params.get("diagnostics")
        version = params.get("version")
        self._on_diagnostics(
            uri,
            diagnostics if isinstance(diagnostics, list) else [],
            version if isinstance(version, int) else None,
        )

    def _handle_log_message(self, params: JSONValue) -> None:
        if not isinstance(params, dict):
            return
        message = params.get("message")
        if not isinstance(message, str) or not message:
            return
        logger.info("clangd: %s", message)
        if self._on_log is not None:
            self._on_log(message)


def _server_info(result: JSONValue) -> JSONObject | None:
    if not isinstance(result, dict):
        return None
    info = result.get("serverInfo")
    if isinstance(info, dict) and info.get("name"):
        return info
    return None
