"""
服务装配：共享锁 + 事件中枢 + 进程监管 + VM 生命周期 + 分发器。

说明：
- 所有可变共享状态（Session 表、VM 状态、订阅集合）由同一把 RLock 保护；
- 组件之间只通过构造参数相互引用，测试可单独装配任一组件。
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cowork_vm_service.config.loader import VmServiceConfig
from cowork_vm_service.core.host_fs import HostFilesystem
from cowork_vm_service.core.lifecycle import VmLifecycleManager
from cowork_vm_service.core.supervisor import ProcessSupervisor
from cowork_vm_service.runtime.dispatcher import RpcDispatcher, build_method_registry
from cowork_vm_service.runtime.events import EventHub


class VmService:
    """进程级服务对象（一个 daemon 一个实例）。"""

    def __init__(
        self,
        config: Optional[VmServiceConfig] = None,
        *,
        home: Optional[Path] = None,
        inherited_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        装配服务组件。

        参数：
        - config：daemon 配置（缺省使用内置默认值）
        - home：用户 home（测试可注入）
        - inherited_env：传给子进程的继承环境（测试可注入）
        """

        self.config = config or VmServiceConfig()
        self.lock = threading.RLock()
        self.hub = EventHub(lock=self.lock)
        self.supervisor = ProcessSupervisor(
            emit=self.hub.broadcast,
            settings=self.config.sandbox,
            lock=self.lock,
            home=home,
            inherited_env=inherited_env,
        )
        self.lifecycle = VmLifecycleManager(
            settings=self.config.vm,
            supervisor=self.supervisor,
            emit=self.hub.broadcast,
            lock=self.lock,
        )
        self.host_fs = HostFilesystem(home=home)
        self.dispatcher = RpcDispatcher(
            build_method_registry(self),
            strict_params=self.config.rpc.strict_params,
        )

    def handle(self, request: Mapping[str, Any], connection: Any = None) -> Dict[str, Any]:
        """分发一条请求（见 `RpcDispatcher.handle`）。"""

        return self.dispatcher.handle(request, connection)

    def shutdown(self) -> None:
        """关停前的资源回收：等价于一次 stopVM。"""

        self.lifecycle.stop_vm()
