"""
daemon 错误分类（异常类型）。

错误分层：
- 帧错误（FramingError）：仅在 framer 内部使用，丢弃缓冲后重新同步，不回传给调用方；
- 分发错误：未知方法/handler 抛错，统一映射为 `{success: false, error}` 响应，连接保持；
- 解析错误：命令找不到，以合成的 `stderr` + `exit(127)` 事件上报（spawn 本身已成功应答）；
- 进程错误：启动期 OS 失败，以 `error` 事件上报；
- 服务级致命错误（AddressInUseError）：不可恢复，进程以非零码退出。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

# 地址被占用时的退出码（区别于一般错误的 1）
EXIT_ADDRESS_IN_USE = 3


class VmServiceError(Exception):
    """daemon 内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class ServiceIssue:
    """结构化问题对象（CLI 以 JSON 输出失败原因时使用）。"""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可 JSON 序列化的 dict。"""

        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class FramingError(VmServiceError):
    """帧负载无法解析（非法 UTF-8/JSON、根节点不是 object、长度超限）。"""


class ConfigError(VmServiceError):
    """配置文件/overlay 非法。"""


class SessionConflictError(VmServiceError):
    """同一 session id 仍存活时再次 spawn。"""

    def __init__(self, session_id: str) -> None:
        """
        创建冲突错误。

        参数：
        - session_id：冲突的 session id
        """

        super().__init__(f"Session already running: {session_id}")
        self.session_id = session_id


class AddressInUseError(VmServiceError):
    """socket 地址已被另一实例占用（服务级致命错误）。"""

    def __init__(self, socket_path: str) -> None:
        """
        创建地址占用错误。

        参数：
        - socket_path：尝试绑定的 socket 路径
        """

        super().__init__(f"Socket already in use: {socket_path}")
        self.socket_path = socket_path


class RpcCallError(VmServiceError):
    """客户端侧：daemon 返回了 `success: false`。"""

    def __init__(self, method: str, message: str) -> None:
        """
        创建 RPC 调用错误。

        参数：
        - method：调用的方法名
        - message：daemon 返回的 error 文本
        """

        super().__init__(message)
        self.method = method
        self.message = message
