"""
VM 生命周期（模拟）。

状态：
- configured（仅记录资源配置）→ running → stopped，可重复启动；
- guestConnected 在 startVM 后延迟 `guest_connect_delay_ms` 置位，并广播 `networkStatus: connected`；
- stopVM 取消未触发的握手定时器；过期定时器（属于上一次启动）不会再改动状态。

说明：
- 当前 backend 不启动真实 VM：bundlePath/磁盘/内存只做记录。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set

from cowork_vm_service.config.loader import VmSettings
from cowork_vm_service.core.supervisor import ProcessSupervisor
from cowork_vm_service.runtime.protocol import (
    ConfigureParams,
    CreateVmParams,
    NetworkStatusEvent,
    OauthTokenParams,
    ServiceEvent,
    StartVmParams,
)

logger = logging.getLogger(__name__)


@dataclass
class VmState:
    """VM 状态快照（进程级单例，由共享锁保护）。"""

    memory_mb: int
    cpu_count: int
    disk_size_gb: int
    bundle_path: Optional[str] = None
    running: bool = False
    guest_connected: bool = False


class VmLifecycleManager:
    """模拟 VM 生命周期管理器。"""

    def __init__(
        self,
        *,
        settings: VmSettings,
        supervisor: ProcessSupervisor,
        emit: Callable[[ServiceEvent], Any],
        lock: Optional[threading.RLock] = None,
    ) -> None:
        """
        创建生命周期管理器。

        参数：
        - settings：默认资源配置与握手延迟
        - supervisor：stopVM 时用于终止全部 Session
        - emit：事件出口（通常为 `EventHub.broadcast`）
        - lock：共享状态锁
        """

        self._settings = settings
        self._supervisor = supervisor
        self._emit = emit
        self._lock = lock or threading.RLock()
        self._state = VmState(
            memory_mb=settings.memory_mb,
            cpu_count=settings.cpu_count,
            disk_size_gb=settings.disk_size_gb,
        )
        self._generation = 0
        self._connect_timer: Optional[threading.Timer] = None
        self._approved_tokens: Set[str] = set()

    @property
    def state(self) -> VmState:
        """当前状态副本。"""

        with self._lock:
            s = self._state
            return VmState(
                memory_mb=s.memory_mb,
                cpu_count=s.cpu_count,
                disk_size_gb=s.disk_size_gb,
                bundle_path=s.bundle_path,
                running=s.running,
                guest_connected=s.guest_connected,
            )

    def configure(self, params: ConfigureParams) -> dict:
        """RPC：configure（只合并提供的字段）。"""

        with self._lock:
            if params.memory_mb is not None:
                self._state.memory_mb = params.memory_mb
            if params.cpu_count is not None:
                self._state.cpu_count = params.cpu_count
            logger.debug("configure: memoryMB=%s, cpuCount=%s", self._state.memory_mb, self._state.cpu_count)
        return {}

    def create_vm(self, params: CreateVmParams) -> dict:
        """RPC：createVM（幂等；不创建任何磁盘镜像）。"""

        with self._lock:
            self._state.bundle_path = params.bundle_path
            if params.disk_size_gb is not None:
                self._state.disk_size_gb = params.disk_size_gb
            logger.debug("createVM: bundlePath=%s, diskSizeGB=%s", params.bundle_path, self._state.disk_size_gb)
        return {}

    def start_vm(self, params: StartVmParams) -> dict:
        """
        RPC：startVM。

        说明：
        - 已在运行时直接返回（不重置 guestConnected，不重新调度握手）；
        - 否则置 running 并调度一次 guest 握手。
        """

        with self._lock:
            self._state.bundle_path = params.bundle_path
            if self._state.running:
                logger.debug("startVM: already running")
                return {}
            if params.memory_gb is not None:
                self._state.memory_mb = int(params.memory_gb * 1024)
            self._state.running = True
            self._state.guest_connected = False
            self._generation += 1
            generation = self._generation
            delay = self._settings.guest_connect_delay_ms / 1000.0
            timer = threading.Timer(delay, self._on_guest_connected, args=(generation,))
            timer.daemon = True
            self._connect_timer = timer
            logger.debug("startVM: bundlePath=%s, memoryMB=%s", params.bundle_path, self._state.memory_mb)
            timer.start()
        return {}

    def _on_guest_connected(self, generation: int) -> None:
        """握手定时器回调：仅当仍属于当前这次启动时才置位并广播。"""

        with self._lock:
            if generation != self._generation or not self._state.running:
                return
            self._connect_timer = None
            self._state.guest_connected = True
            logger.debug("guest connected")
            self._emit(NetworkStatusEvent(status="connected"))

    def stop_vm(self) -> dict:
        """
        RPC：stopVM（总会广播 `networkStatus: disconnected`，即便本就未运行）。
        """

        with self._lock:
            self._generation += 1
            timer, self._connect_timer = self._connect_timer, None
            killed = self._supervisor.kill_all()
            self._state.running = False
            self._state.guest_connected = False
            logger.debug("stopVM: terminated %d session(s)", killed)
            self._emit(NetworkStatusEvent(status="disconnected"))
        if timer is not None:
            timer.cancel()
        return {}

    def is_running(self) -> dict:
        """RPC：isRunning。"""

        with self._lock:
            return {"running": self._state.running}

    def is_guest_connected(self) -> dict:
        """RPC：isGuestConnected。"""

        with self._lock:
            return {"connected": self._state.guest_connected}

    def add_approved_oauth_token(self, params: OauthTokenParams) -> dict:
        """RPC：addApprovedOauthToken（只记录；token 不落日志）。"""

        if params.token:
            with self._lock:
                self._approved_tokens.add(params.token)
        logger.debug("addApprovedOauthToken: recorded")
        return {}

    def is_token_approved(self, token: str) -> bool:
        """
        token 是否已登记。

        说明：
        - 这是 guest OAuth 代理校验 token 的查询入口；模拟 backend 尚未接入该代理。
        """

        with self._lock:
            return token in self._approved_tokens
