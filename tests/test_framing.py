from __future__ import annotations

import json
import logging

import pytest

from basilisk_lsp.framing import (
    FrameDecoder,
    encode_frame,
    error_response_message,
    notification_message,
    request_message,
    response_message,
)


def test_encode_frame_counts_bytes_not_characters() -> None:
    frame = encode_frame({"text": "héllo"})
    header, body = frame.split(b"\r\n\r\n", 1)
    assert header == f"Content-Length: {len(body)}".encode("ascii")
    assert len(body) == len(json.dumps({"text": "héllo"}, ensure_ascii=False)) + 1
    assert json.loads(body.decode("utf-8")) == {"text": "héllo"}


def test_decoder_yields_frame_only_when_body_complete() -> None:
    message = request_message(1, "initialize", {"rootUri": None})
    frame = encode_frame(message)
    decoder = FrameDecoder()
    delivered = []
    for index in range(len(frame)):
        delivered.extend(decoder.feed(frame[index : index + 1]))
        if index < len(frame) - 1:
            assert delivered == []
    assert delivered == [message]
    assert decoder.buffered == 0


def test_decoder_splits_several_frames_from_one_chunk() -> None:
    first = notification_message("initialized", {})
    second = response_message(7, {"ok": True})
    third = error_response_message(8, -32601, "nope")
    decoder = FrameDecoder()
    chunk = encode_frame(first) + encode_frame(second) + encode_frame(third)[:10]
    assert decoder.feed(chunk) == [first, second]
    assert decoder.feed(encode_frame(third)[10:]) == [third]


def test_decoder_accepts_extra_headers_and_any_case() -> None:
    body = json.dumps({"jsonrpc": "2.0", "method": "x"}).encode("utf-8")
    frame = (
        b"content-length: " + str(len(body)).encode() + b"\r\n"
        b"Content-Type: application/vscode-jsonrpc; charset=utf-8\r\n\r\n" + body
    )
    assert FrameDecoder().feed(frame) == [{"jsonrpc": "2.0", "method": "x"}]


def test_decoder_skips_header_without_content_length(caplog: pytest.LogCaptureFixture) -> None:
    good = notification_message("window/logMessage", {"message": "hi"})
    decoder = FrameDecoder()
    with caplog.at_level(logging.WARNING):
        messages = decoder.feed(b"X-Garbage: 1\r\n\r\n" + encode_frame(good))
    assert messages == [good]
    assert "malformed frame header" in caplog.text


def test_decoder_drops_unparsable_body_and_keeps_going() -> None:
    bad = b"not json"
    good = notification_message("$/progress", {"token": 1})
    decoder = FrameDecoder()
    stream = f"Content-Length: {len(bad)}\r\n\r\n".encode() + bad + encode_frame(good)
    assert decoder.feed(stream) == [good]


def test_decoder_drops_non_object_body() -> None:
    body = b"[1, 2, 3]"
    stream = f"Content-Length: {len(body)}\r\n\r\n".encode() + body
    assert FrameDecoder().feed(stream) == []


def test_message_builders_shape() -> None:
    assert request_message(3, "shutdown") == {"jsonrpc": "2.0", "id": 3, "method": "shutdown"}
    assert notification_message("exit") == {"jsonrpc": "2.0", "method": "exit"}
    assert error_response_message(4, -32603, "boom") == {
        "jsonrpc": "2.0",
        "id": 4,
        "error": {"code": -32603, "message": "boom"},
    }
