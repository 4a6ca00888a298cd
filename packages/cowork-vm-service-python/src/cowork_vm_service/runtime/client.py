from __future__ import annotations

import os
import socket
import subprocess
import sys
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, Optional

from cowork_vm_service.config.loader import VmServiceConfig
from cowork_vm_service.core.errors import RpcCallError
from cowork_vm_service.runtime.framing import DEFAULT_MAX_FRAME_BYTES, FrameDecoder, encode_frame
from cowork_vm_service.runtime.paths import get_runtime_paths
from cowork_vm_service.runtime.protocol import is_event


class _FrameReader:
    """客户端侧按帧读取（一次 recv 可能带回多条消息）。"""

    def __init__(self, sock: socket.socket) -> None:
        """
        参数：
        - sock：已连接的 socket
        """

        self._sock = sock
        self._decoder = FrameDecoder(max_frame_bytes=DEFAULT_MAX_FRAME_BYTES)
        self._pending: Deque[Dict[str, Any]] = deque()

    def next_message(self) -> Optional[Dict[str, Any]]:
        """
        读取下一条消息。

        返回：
        - dict：下一条消息
        - None：对端关闭连接

        异常：
        - socket.timeout：超时（由 socket 超时设置决定）
        """

        while not self._pending:
            data = self._sock.recv(64 * 1024)
            if not data:
                return None
            self._pending.extend(self._decoder.feed(data))
        return self._pending.popleft()


class VmServiceClient:
    """
    daemon 客户端（桌面应用一侧的协议实现，也供 CLI 与测试使用）。

    说明：
    - `call()` 每次调用使用一条独立连接；
    - `subscribe()` 使用一条专用长连接，持续产出推送事件。
    """

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        *,
        timeout_sec: float = 5.0,
        config: Optional[VmServiceConfig] = None,
    ) -> None:
        """
        创建客户端。

        参数：
        - socket_path：daemon socket 路径（缺省按配置/XDG 规则解析）
        - timeout_sec：单次调用的 socket 超时
        - config：用于解析默认 socket 路径的配置（缺省内置默认值）
        """

        self._config = config or VmServiceConfig()
        self.socket_path = Path(socket_path) if socket_path else get_runtime_paths(self._config).socket_path
        self._timeout_sec = float(timeout_sec)
        self.launched_process: Optional[subprocess.Popen] = None

    def _connect(self, timeout_sec: Optional[float] = None) -> socket.socket:
        """建立到 daemon 的连接。"""

        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.settimeout(self._timeout_sec if timeout_sec is None else float(timeout_sec))
        try:
            s.connect(str(self.socket_path))
        except OSError:
            s.close()
            raise
        return s

    def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout_sec: Optional[float] = None) -> Dict[str, Any]:
        """
        发起一次 RPC 调用。

        参数：
        - method：方法名（例如 `spawn` / `isRunning`）
        - params：参数对象（可空）
        - timeout_sec：覆盖默认 socket 超时

        返回：
        - result 对象（dict）

        异常：
        - RpcCallError：daemon 返回 `success: false`
        - OSError：连接失败/超时
        """

        with self._connect(timeout_sec) as s:
            s.sendall(encode_frame({"method": str(method), "params": params or {}}))
            reader = _FrameReader(s)
            while True:
                msg = reader.next_message()
                if msg is None:
                    raise ConnectionError(f"connection closed before response to {method}")
                if is_event(msg):
                    continue
                break
        if msg.get("success") is not True:
            raise RpcCallError(method, str(msg.get("error") or "call failed"))
        result = msg.get("result")
        return result if isinstance(result, dict) else {"result": result}

    def ping(self, *, timeout_sec: float = 0.5) -> bool:
        """探测 daemon 是否可响应（用 isRunning 作为探针）。"""

        try:
            self.call("isRunning", timeout_sec=timeout_sec)
            return True
        except (OSError, RpcCallError):
            return False

    def subscribe(self, stop_event: Optional[threading.Event] = None, *, poll_sec: float = 0.2) -> Iterator[Dict[str, Any]]:
        """
        订阅事件流。

        参数：
        - stop_event：置位后结束迭代（缺省只在对端关闭时结束）
        - poll_sec：检查 stop_event 的间隔

        返回：
        - 事件 dict 的迭代器（`{"type": ..., ...}`）
        """

        with self._connect() as s:
            s.sendall(encode_frame({"method": "subscribeEvents", "params": {}}))
            reader = _FrameReader(s)
            while True:
                msg = reader.next_message()
                if msg is None:
                    return
                if is_event(msg):
                    yield msg
                    continue
                if msg.get("success") is not True:
                    raise RpcCallError("subscribeEvents", str(msg.get("error") or "subscribe failed"))
                break

            s.settimeout(float(poll_sec))
            while stop_event is None or not stop_event.is_set():
                try:
                    msg = reader.next_message()
                except socket.timeout:
                    continue
                if msg is None:
                    return
                if is_event(msg):
                    yield msg

    def ensure_server(self, *, start_timeout_ms: int = 2000) -> bool:
        """
        确保 daemon 已在运行。

        语义：
        - socket 可响应：直接返回 False（未拉起新进程）
        - 否则：detached 拉起 `python -m cowork_vm_service.runtime.server`，等待其可响应后返回 True；
          拉起的进程句柄记录在 `launched_process`

        异常：
        - RuntimeError：等待超时
        """

        if self.ping():
            return False

        env = dict(os.environ)
        env["COWORK_VM_SOCKET"] = str(self.socket_path)
        # 测试/开发态下包可能通过 sys.path 加载；后台进程需要显式 PYTHONPATH
        if not str(env.get("PYTHONPATH") or "").strip():
            import cowork_vm_service as _pkg  # local import to avoid circular

            env["PYTHONPATH"] = str(Path(_pkg.__file__).resolve().parent.parent)

        self.launched_process = subprocess.Popen(  # noqa: S603
            [sys.executable, "-m", "cowork_vm_service.runtime.server"],
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )

        deadline = time.monotonic() + start_timeout_ms / 1000.0
        while time.monotonic() < deadline:
            if self.ping():
                return True
            time.sleep(0.05)
        raise RuntimeError(f"vm service start timeout: {self.socket_path}")
