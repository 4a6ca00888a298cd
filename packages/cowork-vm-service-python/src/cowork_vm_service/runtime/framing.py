"""
长度前缀 JSON 帧（请求/响应/事件共用同一种线格式）。

格式：
- 4 字节大端无符号长度 + 该长度的 UTF-8 JSON 文本（根节点必须为 object）。

解码约定：
- 不足 4 字节时不解释长度；负载未收齐时不解码；
- 一次 `feed()` 返回当前缓冲内全部完整消息，剩余半帧留待下次；
- 负载非法（或声明长度超过上限）时丢弃整个缓冲，从下一帧重新同步，不中断连接处理。
"""

from __future__ import annotations

import json
import logging
import struct
from typing import Any, Dict, List, Mapping

from cowork_vm_service.core.errors import FramingError

logger = logging.getLogger(__name__)

HEADER = struct.Struct(">I")
HEADER_SIZE = HEADER.size
DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


def encode_frame(message: Mapping[str, Any]) -> bytes:
    """
    编码一条消息为帧。

    参数：
    - message：可 JSON 序列化的 mapping
    """

    payload = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return HEADER.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Dict[str, Any]:
    """
    解码单个帧负载。

    异常：
    - FramingError：非法 UTF-8/JSON 或根节点不是 object
    """

    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise FramingError(f"malformed payload: {e}") from e
    if not isinstance(obj, dict):
        raise FramingError(f"payload root must be an object, got {type(obj).__name__}")
    return obj


class FrameDecoder:
    """增量帧解码器（每个连接一个实例，非线程安全）。"""

    def __init__(self, *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        """
        创建解码器。

        参数：
        - max_frame_bytes：单帧负载上限；超限视为帧错误
        """

        self._buf = bytearray()
        self._max_frame_bytes = int(max_frame_bytes)

    @property
    def pending_bytes(self) -> int:
        """当前缓冲中尚未解码的字节数。"""

        return len(self._buf)

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        追加字节并取出全部完整消息。

        参数：
        - data：本次读到的字节（可为空）

        返回：
        - 按到达顺序排列的消息列表；遇到帧错误时，返回错误之前已解出的消息并清空缓冲
        """

        if data:
            self._buf.extend(data)

        messages: List[Dict[str, Any]] = []
        while len(self._buf) >= HEADER_SIZE:
            (length,) = HEADER.unpack_from(self._buf, 0)
            if length > self._max_frame_bytes:
                logger.error("Parse error: frame length %d exceeds limit %d", length, self._max_frame_bytes)
                self._buf.clear()
                break
            end = HEADER_SIZE + length
            if len(self._buf) < end:
                break
            payload = bytes(self._buf[HEADER_SIZE:end])
            try:
                message = decode_payload(payload)
            except FramingError as e:
                logger.error("Parse error: %s", e)
                self._buf.clear()
                break
            del self._buf[:end]
            messages.append(message)
        return messages
