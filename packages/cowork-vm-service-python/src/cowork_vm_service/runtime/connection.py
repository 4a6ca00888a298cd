"""
单个客户端连接的出站通道。

设计：
- 每个连接一个有界发送队列 + 一个 writer 线程；响应与事件共用该队列（保证同一连接内的顺序）；
- `send()` 只入队，从不阻塞调用方：慢/卡住的订阅方不会拖住广播或其它连接；
- 队列满或写失败时连接被关闭，并触发 close 回调（EventHub 借此自动移除订阅）。
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import queue
import socket
import threading
from typing import Any, Callable, List, Mapping, Optional

from cowork_vm_service.runtime.framing import encode_frame

logger = logging.getLogger(__name__)

_CLOSE = object()
_ids = itertools.count(1)


class Connection:
    """
    客户端连接（socket + 出站队列 + writer 线程）。

    说明：
    - 读取由 server 的连接线程负责；本类只负责写与关闭；
    - `close()` 幂等：首次调用时触发 close 回调。
    """

    def __init__(self, sock: socket.socket, *, queue_size: int = 4096) -> None:
        """
        创建连接包装。

        参数：
        - sock：已 accept 的 socket
        - queue_size：出站队列上限（帧数）
        """

        self.sock = sock
        self.conn_id = next(_ids)
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(queue_size)))
        self._lock = threading.Lock()
        self._closed = False
        self._callbacks: List[Callable[["Connection"], None]] = []
        self._writer: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        """调试用表示。"""

        return f"<Connection #{self.conn_id} closed={self._closed}>"

    @property
    def closed(self) -> bool:
        """连接是否已关闭（不再接受发送）。"""

        return self._closed

    def start(self) -> None:
        """启动 writer 线程。"""

        t = threading.Thread(target=self._write_loop, name=f"conn-{self.conn_id}-writer", daemon=True)
        self._writer = t
        t.start()

    def send(self, message: Mapping[str, Any]) -> bool:
        """编码并入队一条消息；返回是否入队成功。"""

        return self.send_frame(encode_frame(message))

    def send_frame(self, frame: bytes) -> bool:
        """
        入队一帧已编码数据。

        返回：
        - False：连接已关闭，或队列已满（此时连接被关闭）
        """

        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            logger.warning("connection #%d outbound queue full; dropping connection", self.conn_id)
            self.close(graceful=False)
            return False
        return True

    def add_close_callback(self, callback: Callable[["Connection"], None]) -> None:
        """注册关闭回调；连接已关闭时立即调用。"""

        with self._lock:
            if not self._closed:
                self._callbacks.append(callback)
                return
        callback(self)

    def close(self, *, graceful: bool = True) -> None:
        """
        关闭连接（幂等）。

        参数：
        - graceful：True 时 writer 先发完已入队的帧再关闭 socket；
          False 时立即 shutdown socket（写失败/队列溢出场景）
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        if graceful:
            try:
                self._queue.put_nowait(_CLOSE)
            except queue.Full:
                graceful = False
        if not graceful:
            self._shutdown_socket()
            with contextlib.suppress(queue.Full):
                self._queue.put_nowait(_CLOSE)
        if self._writer is None:
            self._close_socket()

        for cb in callbacks:
            try:
                cb(self)
            except Exception:
                logger.exception("connection close callback failed")

    def _write_loop(self) -> None:
        """writer 线程：按序写出队列中的帧，直到遇到关闭哨兵或写失败。"""

        try:
            while True:
                item = self._queue.get()
                if item is _CLOSE:
                    break
                try:
                    self.sock.sendall(item)
                except OSError as e:
                    logger.debug("connection #%d write failed: %s", self.conn_id, e)
                    break
        finally:
            self._close_socket()
            self.close(graceful=False)

    def _shutdown_socket(self) -> None:
        """shutdown socket，唤醒阻塞在 recv/sendall 上的线程。"""

        with contextlib.suppress(OSError):
            self.sock.shutdown(socket.SHUT_RDWR)

    def _close_socket(self) -> None:
        """shutdown 并关闭底层 socket（best-effort）。"""

        self._shutdown_socket()
        with contextlib.suppress(OSError):
            self.sock.close()
