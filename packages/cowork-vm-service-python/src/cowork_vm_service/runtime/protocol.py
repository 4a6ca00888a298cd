"""
RPC 协议（请求参数 / 推送事件 / 响应 envelope）。

线上形状：
- 请求：`{"method": "<name>", "params": {...}}`
- 响应：`{"success": true, "result": {...}}` 或 `{"success": false, "error": "<message>"}`
- 事件：`{"type": "stdout"|"stderr"|"exit"|"error"|"networkStatus"|"apiReachability", "id"?: ..., ...}`

说明：
- 每个方法对应一个封闭的参数模型（线上字段为 camelCase，模型内部为 snake_case）；
- 缺失/类型错误的参数由 pydantic 校验拦截，而不是在 handler 里零散判断；
- 未声明的字段默认忽略（桌面应用版本可能多带字段），严格模式见 `RpcSettings.strict_params`。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

EVENT_TYPES = ("stdout", "stderr", "exit", "error", "networkStatus", "apiReachability")


class RpcParams(BaseModel):
    """所有方法参数模型的基类（允许按字段名或线上别名构造）。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @classmethod
    def wire_field_names(cls) -> set[str]:
        """返回线上可接受的字段名集合（别名 + 字段名）。"""

        names: set[str] = set()
        for name, info in cls.model_fields.items():
            names.add(name)
            if info.alias:
                names.add(info.alias)
        return names


class EmptyParams(RpcParams):
    """无参数方法（stopVM/isRunning/isGuestConnected/subscribeEvents）。"""


class ConfigureParams(RpcParams):
    """configure：合并提供的字段，缺省字段保持不变。"""

    memory_mb: Optional[int] = Field(default=None, gt=0, alias="memoryMB")
    cpu_count: Optional[int] = Field(default=None, ge=1, alias="cpuCount")


class CreateVmParams(RpcParams):
    """createVM。"""

    bundle_path: Optional[str] = Field(default=None, alias="bundlePath")
    disk_size_gb: Optional[int] = Field(default=None, gt=0, alias="diskSizeGB")


class StartVmParams(RpcParams):
    """startVM。"""

    bundle_path: Optional[str] = Field(default=None, alias="bundlePath")
    memory_gb: Optional[float] = Field(default=None, gt=0, alias="memoryGB")


class SpawnParams(RpcParams):
    """spawn：一次 Session 的完整描述。"""

    id: str = Field(min_length=1)
    name: Optional[str] = None
    command: str
    args: Optional[List[str]] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, Any]] = None
    additional_mounts: Optional[Any] = Field(default=None, alias="additionalMounts")
    is_resume: Optional[bool] = Field(default=None, alias="isResume")
    allowed_domains: Optional[List[str]] = Field(default=None, alias="allowedDomains")
    shared_cwd_path: Optional[str] = Field(default=None, alias="sharedCwdPath")
    one_shot: bool = Field(default=False, alias="oneShot")


class KillParams(RpcParams):
    """kill：signal 缺省为 SIGTERM；允许信号名或信号编号。"""

    id: str
    signal: Optional[Union[int, str]] = None


class WriteStdinParams(RpcParams):
    """writeStdin。"""

    id: str
    data: str


class ProcessIdParams(RpcParams):
    """isProcessRunning。"""

    id: str


class MountPathParams(RpcParams):
    """mountPath。"""

    process_id: Optional[str] = Field(default=None, alias="processId")
    subpath: Optional[str] = None
    mount_name: Optional[str] = Field(default=None, alias="mountName")
    mode: Optional[str] = None


class ReadFileParams(RpcParams):
    """readFile。"""

    process_name: Optional[str] = Field(default=None, alias="processName")
    file_path: str = Field(alias="filePath")


class InstallSdkParams(RpcParams):
    """installSdk：两项都提供时才会尝试记录 SDK 可执行文件。"""

    sdk_subpath: Optional[str] = Field(default=None, alias="sdkSubpath")
    version: Optional[str] = None


class OauthTokenParams(RpcParams):
    """addApprovedOauthToken。"""

    token: Optional[str] = None


class ServiceEvent(BaseModel):
    """推送事件基类。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """转换为线上 dict（camelCase；保留 null 字段）。"""

        return self.model_dump(by_alias=True)


class OutputEvent(ServiceEvent):
    """子进程 stdout/stderr 片段。"""

    type: Literal["stdout", "stderr"]
    id: str
    data: str


class ExitEvent(ServiceEvent):
    """子进程退出（被信号终止时 exitCode 为 null，signal 为信号名）。"""

    type: Literal["exit"] = "exit"
    id: str
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    signal: Optional[str] = None


class ErrorEvent(ServiceEvent):
    """启动期进程错误。"""

    type: Literal["error"] = "error"
    id: str
    message: str


class NetworkStatusEvent(ServiceEvent):
    """guest 网络状态。"""

    type: Literal["networkStatus"] = "networkStatus"
    status: Literal["connected", "disconnected"]


def ok_response(result: Any = None) -> Dict[str, Any]:
    """成功响应；handler 返回 None 时 result 为 `{}`。"""

    return {"success": True, "result": {} if result is None else result}


def error_response(message: str) -> Dict[str, Any]:
    """失败响应。"""

    return {"success": False, "error": str(message)}


def is_event(message: Any) -> bool:
    """按负载形状区分事件与响应（事件带 `type` 字段）。"""

    return isinstance(message, dict) and "type" in message
