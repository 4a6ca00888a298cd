"""
Unix socket server（长度前缀 JSON 帧；请求/响应 + 事件推送）。

行为：
- 启动：无条件删除残留 socket 文件 → bind → chmod 0600 → listen；地址被占用时以退出码 3 结束；
- 每个连接一个读线程（同一连接上的请求按序处理）+ 一个写线程（见 `Connection`）；
- SIGTERM/SIGINT、accept 循环或任一线程里的未捕获异常都会触发关停：
  stopVM → 关闭监听与全部连接 → 删除 socket 文件 → 退出（信号 0，错误 1）。

入口：
- `python -m cowork_vm_service.runtime.server`（由客户端 detached 拉起）
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import signal
import socket
import stat
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Set

from cowork_vm_service.config.loader import VmServiceConfig, load_config
from cowork_vm_service.core.errors import EXIT_ADDRESS_IN_USE, AddressInUseError, ConfigError
from cowork_vm_service.observability.logging_setup import configure_logging
from cowork_vm_service.runtime.connection import Connection
from cowork_vm_service.runtime.framing import FrameDecoder
from cowork_vm_service.runtime.paths import get_runtime_paths
from cowork_vm_service.runtime.service import VmService

logger = logging.getLogger(__name__)

_RECV_CHUNK = 64 * 1024


class VmServiceServer:
    """
    daemon 的 socket 层。

    说明：
    - `bind()` 与 `serve_forever()` 分开，便于调用方区分“地址被占用”与运行期错误；
    - 测试中可在后台线程运行 `serve_forever()`，用 `ready` 等待监听就绪、`request_shutdown()` 结束。
    """

    def __init__(
        self,
        *,
        config: Optional[VmServiceConfig] = None,
        service: Optional[VmService] = None,
        socket_path: Optional[Path] = None,
    ) -> None:
        """
        创建 server。

        参数：
        - config：daemon 配置（缺省内置默认值）
        - service：已装配的服务对象（缺省按 config 装配）
        - socket_path：显式 socket 路径（覆盖配置与 XDG 规则）
        """

        self.config = config or VmServiceConfig()
        self.service = service or VmService(self.config)
        self.socket_path = Path(socket_path) if socket_path else get_runtime_paths(self.config).socket_path
        self.ready = threading.Event()

        self._shutdown = threading.Event()
        self._listener: Optional[socket.socket] = None
        self._conn_lock = threading.Lock()
        self._connections: Set[Connection] = set()
        self._fatal_error: Optional[BaseException] = None
        self._prev_excepthook: Any = None
        self._cleaned = False

    @property
    def fatal_error(self) -> Optional[BaseException]:
        """导致关停的未捕获异常（信号/主动关停时为 None）。"""

        return self._fatal_error

    def connection_count(self) -> int:
        """当前存活连接数。"""

        with self._conn_lock:
            return len(self._connections)

    def bind(self) -> None:
        """
        删除残留 socket 并开始监听。

        异常：
        - AddressInUseError：地址被另一实例占用
        """

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        # 上次异常退出可能留下 socket 文件；不存在时忽略
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()

        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            s.bind(str(self.socket_path))
        except OSError as e:
            s.close()
            if e.errno == errno.EADDRINUSE:
                raise AddressInUseError(str(self.socket_path)) from e
            raise
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
        s.listen(64)
        s.settimeout(self.config.rpc.accept_poll_ms / 1000.0)
        self._listener = s
        logger.debug("Listening on %s", self.socket_path)

    def install_signal_handlers(self) -> None:
        """注册 SIGTERM/SIGINT 与线程未捕获异常钩子（仅主线程可调用）。"""

        def _on_signal(signum: int, _frame: Any) -> None:
            """信号处理：请求关停。"""

            logger.debug("Received %s, shutting down", signal.Signals(signum).name)
            self.request_shutdown()

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

        self._prev_excepthook = threading.excepthook

        def _on_thread_exception(args: "threading.ExceptHookArgs") -> None:
            """线程未捕获异常：记录并按错误关停。"""

            if args.exc_type is SystemExit:
                return
            logger.error(
                "Uncaught exception in thread %s: %s",
                getattr(args.thread, "name", "?"),
                args.exc_value,
                exc_info=(args.exc_type, args.exc_value, args.exc_traceback),  # type: ignore[arg-type]
            )
            self.request_shutdown(args.exc_value or RuntimeError("uncaught thread exception"))

        threading.excepthook = _on_thread_exception

    def request_shutdown(self, error: Optional[BaseException] = None) -> None:
        """
        请求关停（线程安全、幂等）。

        参数：
        - error：导致关停的异常（None 表示正常关停）
        """

        if error is not None and self._fatal_error is None:
            self._fatal_error = error
        self._shutdown.set()

    def serve_forever(self) -> None:
        """运行 accept 循环，直到关停；退出前总会完成清理。"""

        if self._listener is None:
            self.bind()
        listener = self._listener
        assert listener is not None
        self.ready.set()
        try:
            while not self._shutdown.is_set():
                try:
                    sock, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._shutdown.is_set():
                        break
                    raise RuntimeError(f"accept failed: {e}") from e
                self._start_connection(sock)
        except Exception as e:
            logger.exception("Server error: %s", e)
            self.request_shutdown(e)
        finally:
            self.close()

    def _start_connection(self, sock: socket.socket) -> None:
        """登记新连接并启动其读/写线程。"""

        sock.settimeout(None)
        conn = Connection(sock, queue_size=self.config.rpc.subscriber_queue_size)
        with self._conn_lock:
            self._connections.add(conn)
        conn.add_close_callback(self._forget_connection)
        conn.start()
        logger.debug("Client connected (#%d)", conn.conn_id)
        threading.Thread(
            target=self._serve_connection,
            args=(conn,),
            name=f"conn-{conn.conn_id}-reader",
            daemon=True,
        ).start()

    def _forget_connection(self, conn: Connection) -> None:
        """连接关闭回调：从存活集合移除。"""

        with self._conn_lock:
            self._connections.discard(conn)

    def _serve_connection(self, conn: Connection) -> None:
        """读线程：解帧 → 分发 → 入队响应，直到对端关闭或连接被关闭。"""

        decoder = FrameDecoder(max_frame_bytes=self.config.rpc.max_frame_bytes)
        try:
            while not conn.closed:
                try:
                    data = conn.sock.recv(_RECV_CHUNK)
                except OSError as e:
                    logger.debug("connection #%d read failed: %s", conn.conn_id, e)
                    break
                if not data:
                    break
                for request in decoder.feed(data):
                    self._handle_request(conn, request)
        finally:
            logger.debug("Client disconnected (#%d)", conn.conn_id)
            conn.close()

    def _handle_request(self, conn: Connection, request: dict) -> None:
        """处理单条请求并把响应写回同一连接。"""

        if request.get("method") == "subscribeEvents":
            # 订阅登记与其响应一起入队，保证响应先于该连接收到的第一个事件
            with self.service.lock:
                response = self.service.handle(request, conn)
                conn.send(response)
            return
        response = self.service.handle(request, conn)
        conn.send(response)

    def close(self) -> None:
        """清理：stopVM → 关闭监听与连接 → 删除 socket 文件（幂等）。"""

        if self._cleaned:
            return
        self._cleaned = True
        self._shutdown.set()
        try:
            self.service.shutdown()
        except Exception as e:
            logger.error("stopVM during shutdown failed: %s", e)
        if self._listener is not None:
            with contextlib.suppress(OSError):
                self._listener.close()
        with self._conn_lock:
            conns = list(self._connections)
        for c in conns:
            c.close()
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        if self._prev_excepthook is not None:
            threading.excepthook = self._prev_excepthook
            self._prev_excepthook = None
        logger.debug("Server stopped")


def run_server(config: VmServiceConfig, *, socket_path: Optional[Path] = None) -> int:
    """
    前台运行 daemon 直到关停。

    返回：
    - 0：信号/主动关停；1：运行期错误；3：地址被占用
    """

    server = VmServiceServer(config=config, socket_path=socket_path)
    try:
        server.bind()
    except AddressInUseError as e:
        logger.error("%s", e)
        return EXIT_ADDRESS_IN_USE
    server.install_signal_handlers()
    server.serve_forever()
    return 1 if server.fatal_error is not None else 0


def main() -> int:
    """
    模块入口：加载配置（`COWORK_VM_CONFIG` 等环境变量）、配置日志并运行 daemon。
    """

    try:
        config = load_config()
    except ConfigError as e:
        sys.stderr.write(f"{e}\n")
        return 1
    paths = get_runtime_paths(config)
    configure_logging(log_file=paths.log_file, debug=config.debug)
    return run_server(config)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
