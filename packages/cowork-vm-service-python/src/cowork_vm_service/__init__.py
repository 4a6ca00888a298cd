"""
Cowork VM Service（Python）。

说明：
- 本包是桌面应用按需拉起的本地执行控制面 daemon：
  - Unix domain socket 监听，4 字节大端长度前缀 + JSON 负载；
  - 代为执行命令，并把 stdout/stderr/exit 以事件形式异步推送给订阅方；
  - 模拟 VM 生命周期（configured → running → stopped）与“guest 已连接”信号。
- 当前 backend 直接在宿主机执行命令（VM 仅为模拟）；真实 hypervisor backend 不在本包范围内。
"""

from __future__ import annotations

from cowork_vm_service.runtime.client import VmServiceClient
from cowork_vm_service.runtime.server import VmServiceServer
from cowork_vm_service.runtime.service import VmService

__all__ = ["VmService", "VmServiceClient", "VmServiceServer", "__version__"]

__version__ = "0.1.0"
