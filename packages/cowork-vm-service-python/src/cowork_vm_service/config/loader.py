"""
配置加载器（YAML）。

设计目标：
- 内置 `assets/default.yaml` 作为基线，overlay 按顺序深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）；
- 环境变量只覆盖少量运维开关（debug/socket），其余一律走 overlay。

环境变量：
- `COWORK_VM_CONFIG`：overlay YAML 路径（可选）
- `COWORK_VM_DEBUG=1` / `CLAUDE_LINUX_DEBUG=1`：打开 debug 日志
- `COWORK_VM_SOCKET`：直接指定 socket 路径
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cowork_vm_service.config.defaults import load_default_config_dict
from cowork_vm_service.core.errors import ConfigError

ENV_CONFIG_PATH = "COWORK_VM_CONFIG"
ENV_SOCKET_PATH = "COWORK_VM_SOCKET"
DEBUG_ENV_VARS = ("COWORK_VM_DEBUG", "CLAUDE_LINUX_DEBUG")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class VmSettings(BaseModel):
    """VM 资源配置（stub backend 下仅作记录，不做强制）。"""

    model_config = ConfigDict(extra="forbid")

    memory_mb: int = Field(default=8192, gt=0)
    cpu_count: int = Field(default=4, ge=1)
    disk_size_gb: int = Field(default=10, gt=0)
    guest_connect_delay_ms: int = Field(default=500, ge=0)


class SandboxSettings(BaseModel):
    """
    隔离命名空间路径/环境变量的清洗规则。

    说明：
    - `path_prefix` 是对“未来真实隔离边界”的启发式判断（provisional）；
    - `strip_inherited_prefixes` 仅作用于 daemon 自身继承的环境，调用方传入的同名前缀变量保留。
    """

    model_config = ConfigDict(extra="forbid")

    path_prefix: str = "/sessions/"
    path_flags: List[str] = Field(default_factory=lambda: ["--add-dir", "--plugin-dir"])
    config_dir_env: str = "CLAUDE_CONFIG_DIR"
    session_marker_env: str = "CLAUDECODE"
    strip_env: List[str] = Field(default_factory=lambda: ["ELECTRON_RUN_AS_NODE", "ELECTRON_NO_ASAR"])
    strip_inherited_prefixes: List[str] = Field(default_factory=lambda: ["CLAUDE_CODE_"])
    term: str = "xterm-256color"
    sdk_binary_name: str = "claude"


class RpcSettings(BaseModel):
    """RPC/传输层参数。"""

    model_config = ConfigDict(extra="forbid")

    max_frame_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)
    strict_params: bool = False
    subscriber_queue_size: int = Field(default=4096, ge=1)
    accept_poll_ms: int = Field(default=200, ge=10)


class VmServiceConfig(BaseModel):
    """daemon 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    service_name: str = "cowork-vm-service"
    socket_path: Optional[str] = None
    debug: bool = False
    log_file: Optional[str] = None
    vm: VmSettings = Field(default_factory=VmSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    rpc: RpcSettings = Field(default_factory=RpcSettings)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"config file is not valid YAML: {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping(dict): {path}")
    return data


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """
    从环境变量提取覆盖项。

    参数：
    - env：环境变量映射（通常为 os.environ）
    """

    out: Dict[str, Any] = {}
    if any(str(env.get(k) or "").strip() == "1" for k in DEBUG_ENV_VARS):
        out["debug"] = True
    socket_path = str(env.get(ENV_SOCKET_PATH) or "").strip()
    if socket_path:
        out["socket_path"] = socket_path
    return out


def load_config_dicts(config_dicts: Iterable[Dict[str, Any]]) -> VmServiceConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `VmServiceConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return VmServiceConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid config: {e}") from e


def load_config(
    overlay_paths: Iterable[Path] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
) -> VmServiceConfig:
    """
    加载 daemon 配置：内置默认 → overlays → `COWORK_VM_CONFIG` → 环境变量覆盖。

    参数：
    - overlay_paths：显式 overlay YAML 路径（按顺序合并）
    - env：环境变量映射（默认 os.environ；测试可注入）
    """

    env_map = os.environ if env is None else env
    dicts: List[Dict[str, Any]] = [load_default_config_dict()]
    for p in overlay_paths:
        dicts.append(_load_yaml_file(Path(p).expanduser()))
    env_overlay = str(env_map.get(ENV_CONFIG_PATH) or "").strip()
    if env_overlay:
        dicts.append(_load_yaml_file(Path(env_overlay).expanduser()))
    dicts.append(_env_overrides(env_map))
    return load_config_dicts(dicts)
