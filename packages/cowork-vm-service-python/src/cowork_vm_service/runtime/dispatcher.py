"""
RPC 分发（方法注册表 → 参数校验 → handler → 响应 envelope）。

约定：
- 每个方法在注册表里对应一个封闭的参数模型与一个 handler；
- 任何失败（未知方法、参数校验失败、handler 抛错）都映射为 `{success: false, error}`，
  连接本身不受影响；
- 仅 subscribeEvents 需要感知发起请求的连接，其余 handler 只拿到校验后的参数。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Mapping, Type

from pydantic import ValidationError

from cowork_vm_service.runtime.protocol import (
    ConfigureParams,
    CreateVmParams,
    EmptyParams,
    InstallSdkParams,
    KillParams,
    MountPathParams,
    OauthTokenParams,
    ProcessIdParams,
    ReadFileParams,
    RpcParams,
    SpawnParams,
    StartVmParams,
    WriteStdinParams,
    error_response,
    ok_response,
)

if TYPE_CHECKING:
    from cowork_vm_service.runtime.service import VmService

logger = logging.getLogger(__name__)

# debug 日志中请求体的截断长度
REQUEST_LOG_LIMIT = 200

Handler = Callable[[RpcParams, Any], Any]


@dataclass(frozen=True)
class MethodSpec:
    """注册表条目：方法名 + 参数模型 + handler（`handler(params, connection)`）。"""

    name: str
    params_model: Type[RpcParams]
    handler: Handler


def _format_validation_error(e: ValidationError) -> str:
    """把 pydantic 校验错误压成一行：`<字段>: <原因>; ...`。"""

    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "params"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts) or str(e)


def _summarize_request(method: str, params: Any) -> str:
    """debug 日志用的请求摘要（env 只保留 key，整体截断）。"""

    shown: Any = params
    if isinstance(params, dict) and isinstance(params.get("env"), dict):
        shown = dict(params, env=sorted(str(k) for k in params["env"].keys()))
    try:
        text = json.dumps(shown, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(shown)
    return f"{method} {text}"[:REQUEST_LOG_LIMIT]


class RpcDispatcher:
    """方法注册表与分发逻辑。"""

    def __init__(self, methods: Iterable[MethodSpec], *, strict_params: bool = False) -> None:
        """
        创建分发器。

        参数：
        - methods：注册表条目（方法名不可重复）
        - strict_params：True 时拒绝未声明的参数字段
        """

        self._methods: Dict[str, MethodSpec] = {}
        for spec in methods:
            if spec.name in self._methods:
                raise ValueError(f"duplicate method: {spec.name}")
            self._methods[spec.name] = spec
        self._strict_params = bool(strict_params)

    @property
    def method_names(self) -> list[str]:
        """已注册的方法名（按注册顺序）。"""

        return list(self._methods.keys())

    def handle(self, request: Mapping[str, Any], connection: Any = None) -> Dict[str, Any]:
        """
        处理一条请求并返回响应 envelope（从不抛异常）。

        参数：
        - request：已解码的请求对象 `{method, params}`
        - connection：发起请求的连接（subscribeEvents 使用）
        """

        method = request.get("method")
        raw_params = request.get("params")
        if raw_params is None:
            raw_params = {}
        logger.debug("Request: %s", _summarize_request(str(method), raw_params))

        spec = self._methods.get(method) if isinstance(method, str) else None
        if spec is None:
            return error_response(f"Unknown method: {method}")
        if not isinstance(raw_params, dict):
            return error_response(f"Invalid params for {spec.name}: params must be an object")

        unknown = sorted(set(raw_params.keys()) - spec.params_model.wire_field_names())
        if unknown:
            if self._strict_params:
                return error_response(f"Unknown params for {spec.name}: {', '.join(unknown)}")
            logger.debug("Ignoring unknown params for %s: %s", spec.name, unknown)

        try:
            params = spec.params_model.model_validate(raw_params)
        except ValidationError as e:
            return error_response(f"Invalid params for {spec.name}: {_format_validation_error(e)}")

        try:
            result = spec.handler(params, connection)
        except Exception as e:
            logger.error("Method %s failed: %s", spec.name, e)
            return error_response(str(e) or type(e).__name__)
        return ok_response(result)


def build_method_registry(service: "VmService") -> list[MethodSpec]:
    """
    构造完整的方法注册表（线上方法名 → 参数模型 → 服务组件）。

    参数：
    - service：已装配的 VmService
    """

    lifecycle = service.lifecycle
    supervisor = service.supervisor
    host_fs = service.host_fs
    hub = service.hub

    def _subscribe(_params: RpcParams, connection: Any) -> dict:
        """subscribeEvents：把发起请求的连接加入订阅集合。"""

        if connection is None:
            raise ValueError("subscribeEvents requires a connection")
        return hub.subscribe(connection)

    def _params_only(fn: Callable[[Any], Any]) -> Handler:
        """把只接收参数的 handler 适配为 `(params, connection)` 形式。"""

        return lambda params, _conn: fn(params)

    def _no_params(fn: Callable[[], Any]) -> Handler:
        """把无参 handler 适配为 `(params, connection)` 形式。"""

        return lambda _params, _conn: fn()

    return [
        MethodSpec("configure", ConfigureParams, _params_only(lifecycle.configure)),
        MethodSpec("createVM", CreateVmParams, _params_only(lifecycle.create_vm)),
        MethodSpec("startVM", StartVmParams, _params_only(lifecycle.start_vm)),
        MethodSpec("stopVM", EmptyParams, _no_params(lifecycle.stop_vm)),
        MethodSpec("isRunning", EmptyParams, _no_params(lifecycle.is_running)),
        MethodSpec("isGuestConnected", EmptyParams, _no_params(lifecycle.is_guest_connected)),
        MethodSpec("spawn", SpawnParams, _params_only(supervisor.spawn)),
        MethodSpec("kill", KillParams, _params_only(supervisor.kill)),
        MethodSpec("writeStdin", WriteStdinParams, _params_only(supervisor.write_stdin)),
        MethodSpec("isProcessRunning", ProcessIdParams, _params_only(supervisor.is_process_running)),
        MethodSpec("mountPath", MountPathParams, _params_only(host_fs.mount_path)),
        MethodSpec("readFile", ReadFileParams, _params_only(host_fs.read_file)),
        MethodSpec("installSdk", InstallSdkParams, _params_only(supervisor.install_sdk)),
        MethodSpec("addApprovedOauthToken", OauthTokenParams, _params_only(lifecycle.add_approved_oauth_token)),
        MethodSpec("subscribeEvents", EmptyParams, _subscribe),
    ]
