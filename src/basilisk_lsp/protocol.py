from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from basilisk_lsp.exceptions import PeerError
from basilisk_lsp.framing import (
    encode_frame,
    error_response_message,
    notification_message,
    request_message,
    response_message,
)
from basilisk_lsp.json_types import JSONObject, JSONValue, RequestId

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[JSONValue], None]
PeerRequestHandler = Callable[[JSONValue], JSONValue]

_INTERNAL_ERROR = -32603


def _answer_configuration(params: JSONValue) -> JSONValue:
    items = params.get("items") if isinstance(params, dict) else None
    if not isinstance(items, list):
        return []
    return [{} for _ in items]


def _answer_null(_params: JSONValue) -> JSONValue:
    return None


def _answer_apply_edit(_params: JSONValue) -> JSONValue:
    return {"applied": False}


DEFAULT_PEER_REQUEST_HANDLERS: Mapping[str, PeerRequestHandler] = {
    "workspace/configuration": _answer_configuration,
    "client/registerCapability": _answer_null,
    "client/unregisterCapability": _answer_null,
    "window/workDoneProgress/create": _answer_null,
    "workspace/applyEdit": _answer_apply_edit,
}


@dataclass
class PendingRequest:
    method: str
    future: asyncio.Future[JSONValue]


class ProtocolSession:
    """JSON-RPC correlation over a framed byte channel.

    Outbound requests get monotonically increasing integer ids and a pending
    entry that is removed as soon as its future settles, whether by response,
    by caller cancellation, or by :meth:`reject_all`. Inbound frames are
    classified as responses, peer requests or notifications. Every peer request
    is answered, with a conservative default when no handler knows the method,
    since clangd may block waiting for the reply.
    """

    def __init__(
        self,
        send: Callable[[bytes], None],
        *,
        notification_handlers: Mapping[str, NotificationHandler] | None = None,
        request_handlers: Mapping[str, PeerRequestHandler] | None = None,
    ) -> None:
        self._send = send
        self._next_id = 1
        self._pending: dict[RequestId, PendingRequest] = {}
        self._notification_handlers = dict(notification_handlers or {})
        self._request_handlers = {**DEFAULT_PEER_REQUEST_HANDLERS, **(request_handlers or {})}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_methods(self) -> list[str]:
        return [entry.method for entry in self._pending.values()]

    def request(self, method: str, params: JSONValue = None) -> asyncio.Future[JSONValue]:
        request_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[JSONValue] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(method=method, future=future)
        future.add_done_callback(lambda _done: self._pending.pop(request_id, None))
        self._send(encode_frame(request_message(request_id, method, params)))
        return future

    def notify(self, method: str, params: JSONValue = None) -> None:
        self._send(encode_frame(notification_message(method, params)))

    def reject_all(self, exc: BaseException) -> int:
        pending = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(exc)
                rejected += 1
        return rejected

    def handle_message(self, message: JSONObject) -> None:
        method = message.get("method")
        has_id = "id" in message
        if isinstance(method, str):
            if has_id:
                self._answer_peer_request(message["id"], method, message.get("params"))
            else:
                self._dispatch_notification(method, message.get("params"))
            return
        if has_id:
            self._settle_response(message)
            return
        logger.debug("Ignoring frame with neither id nor method: %s", sorted(message))

    def _settle_response(self, message: JSONObject) -> None:
        request_id = message.get("id")
        entry = self._pending.pop(request_id, None) if isinstance(request_id, (int, str)) else None
        if entry is None:
            logger.debug("Dropping response for unknown request id %r", request_id)
            return
        if entry.future.done():
            return
        error = message.get("error")
        if error is not None:
            entry.future.set_exception(_peer_error(error, entry.method))
            return
        entry.future.set_result(message.get("result"))

    def _answer_peer_request(self, request_id: JSONValue, method: str, params: JSONValue) -> None:
        handler = self._request_handlers.get(method, _answer_null)
        try:
            result = handler(params)
        except Exception as exc:
            logger.exception("Peer request handler for %s failed", method)
            self._send(encode_frame(error_response_message(request_id, _INTERNAL_ERROR, str(exc))))
            return
        self._send(encode_frame(response_message(request_id, result)))

    def _dispatch_notification(self, method: str, params: JSONValue) -> None:
        handler = self._notification_handlers.get(method)
        if handler is None:
            return
        handler(params)


def _peer_error(error: JSONValue, method: str) -> PeerError:
    if isinstance(error, dict):
        message = error.get("message")
        code = error.get("code")
        return PeerError(
            str(message) if message is not None else f"{method} failed",
            code=code if isinstance(code, int) else None,
            data=error.get("data"),
            method=method,
        )
    return PeerError(str(error), method=method)
