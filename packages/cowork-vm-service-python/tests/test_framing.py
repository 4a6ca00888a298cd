from __future__ import annotations

import json
import struct

import pytest

from cowork_vm_service.core.errors import FramingError
from cowork_vm_service.runtime.framing import FrameDecoder, decode_payload, encode_frame


def _raw_frame(payload: bytes) -> bytes:
    return struct.pack(">I", len(payload)) + payload


def test_encode_frame_uses_big_endian_length_prefix() -> None:
    frame = encode_frame({"method": "isRunning", "params": {}})
    (length,) = struct.unpack(">I", frame[:4])
    assert length == len(frame) - 4
    assert json.loads(frame[4:].decode("utf-8")) == {"method": "isRunning", "params": {}}


def test_encode_frame_keeps_non_ascii_as_utf8() -> None:
    frame = encode_frame({"data": "héllo 世界"})
    assert "世界".encode("utf-8") in frame
    (length,) = struct.unpack(">I", frame[:4])
    assert length == len(frame[4:])


def test_decoder_returns_every_complete_message_in_one_feed() -> None:
    dec = FrameDecoder()
    data = encode_frame({"n": 1}) + encode_frame({"n": 2}) + encode_frame({"n": 3})
    assert dec.feed(data) == [{"n": 1}, {"n": 2}, {"n": 3}]
    assert dec.pending_bytes == 0


def test_decoder_waits_for_partial_header_and_partial_payload() -> None:
    """
    半帧处理：
    - 不足 4 字节时不解释长度；
    - 负载未收齐时不解码，剩余字节保留到下一次 feed。
    """

    dec = FrameDecoder()
    frame = encode_frame({"type": "stdout", "id": "s1", "data": "x" * 100})

    assert dec.feed(frame[:3]) == []
    assert dec.pending_bytes == 3
    assert dec.feed(frame[3:20]) == []
    assert dec.feed(frame[20:]) == [{"type": "stdout", "id": "s1", "data": "x" * 100}]
    assert dec.pending_bytes == 0


def test_decoder_keeps_trailing_half_frame() -> None:
    dec = FrameDecoder()
    second = encode_frame({"n": 2})
    out = dec.feed(encode_frame({"n": 1}) + second[:6])
    assert out == [{"n": 1}]
    assert dec.pending_bytes == 6
    assert dec.feed(second[6:]) == [{"n": 2}]


def test_decoder_discards_buffer_on_malformed_payload_and_resyncs() -> None:
    dec = FrameDecoder()
    bad = _raw_frame(b"{not json")
    out = dec.feed(encode_frame({"n": 1}) + bad + encode_frame({"n": 2}))
    # 错误之前的消息保留；错误帧及其后的缓冲被丢弃
    assert out == [{"n": 1}]
    assert dec.pending_bytes == 0

    # 下一帧从干净的缓冲开始解码
    assert dec.feed(encode_frame({"n": 3})) == [{"n": 3}]


def test_decoder_rejects_non_object_root() -> None:
    dec = FrameDecoder()
    assert dec.feed(_raw_frame(b"[1,2,3]")) == []
    assert dec.pending_bytes == 0


def test_decoder_rejects_oversized_length() -> None:
    dec = FrameDecoder(max_frame_bytes=1024)
    assert dec.feed(struct.pack(">I", 4096) + b"{}") == []
    assert dec.pending_bytes == 0
    assert dec.feed(encode_frame({"ok": True})) == [{"ok": True}]


def test_decode_payload_errors_are_framing_errors() -> None:
    with pytest.raises(FramingError):
        decode_payload(b"\xff\xfe")
    with pytest.raises(FramingError):
        decode_payload(b'"just a string"')
    assert decode_payload(b'{"a": 1}') == {"a": 1}
