"""Exception types raised across the clangd bridge and the qcc runner."""

from __future__ import annotations

from basilisk_lsp.json_types import JSONValue


class BasiliskLspError(RuntimeError):
    pass


class TransportError(BasiliskLspError):
    """The peer process could not be spawned or written to."""


class ProcessExitedError(TransportError):
    def __init__(self, message: str = "clangd exited", *, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class PeerError(BasiliskLspError):
    """An error response returned by the peer for one of our requests."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: JSONValue = None,
        method: str = "",
    ):
        super().__init__(message)
        self.code = code
        self.data = data
        self.method = method


class BridgeNotReadyError(BasiliskLspError):
    pass


class BridgeStartError(BasiliskLspError):
    pass


class ToolNotFoundError(BasiliskLspError):
    def __init__(self, command: str):
        super().__init__(f"executable not found: {command}")
        self.command = command


class CommandTimeoutError(BasiliskLspError):
    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {int(timeout * 1000)}ms: {command}")
        self.command = command
        self.timeout = timeout


class NeverThrown(BasiliskLspError):
    """Raised by :func:`basilisk_lsp.invariants.never` on a code path that must not run."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})
