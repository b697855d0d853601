from __future__ import annotations

import json
import logging
import re

from basilisk_lsp.json_types import JSONObject, JSONValue

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
_CONTENT_LENGTH_RE = re.compile(rb"content-length:[ \t]*(\d+)", re.IGNORECASE)


def encode_frame(message: JSONObject) -> bytes:
    payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


def request_message(request_id: int, method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def notification_message(method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def response_message(request_id: JSONValue, result: JSONValue) -> JSONObject:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response_message(
    request_id: JSONValue, code: int, message: str
) -> JSONObject:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


class FrameDecoder:
    """Reassembles Content-Length framed JSON messages from arbitrary chunks.

    ``feed`` may be called with any slicing of the byte stream; a frame is
    returned only once its whole body has arrived. A header block without a
    usable ``Content-Length`` is discarded and scanning resumes after it, and
    a body that is not a JSON object is dropped, so one bad frame never stalls
    the stream.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[JSONObject]:
        self._buffer.extend(chunk)
        messages: list[JSONObject] = []
        while True:
            header_end = self._buffer.find(HEADER_TERMINATOR)
            if header_end < 0:
                return messages
            header = bytes(self._buffer[:header_end])
            match = _CONTENT_LENGTH_RE.search(header)
            if match is None:
                logger.warning(
                    "Skipping malformed frame header: %r", header[:80]
                )
                del self._buffer[: header_end + len(HEADER_TERMINATOR)]
                continue
            body_start = header_end + len(HEADER_TERMINATOR)
            body_end = body_start + int(match.group(1))
            if len(self._buffer) < body_end:
                return messages
            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]
            message = _decode_body(body)
            if message is not None:
                messages.append(message)


def _decode_body(body: bytes) -> JSONObject | None:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("Failed to parse clangd message: %s", exc)
        return None
    if not isinstance(message, dict):
        logger.error(
            "Dropping non-object clangd message: %s", type(message).__name__
        )
        return None
    return message
