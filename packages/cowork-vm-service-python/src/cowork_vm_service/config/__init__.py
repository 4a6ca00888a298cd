"""
配置层（YAML overlay + pydantic 校验）。
"""

from __future__ import annotations

from cowork_vm_service.config.loader import (
    RpcSettings,
    SandboxSettings,
    VmServiceConfig,
    VmSettings,
    load_config,
    load_config_dicts,
)

__all__ = [
    "RpcSettings",
    "SandboxSettings",
    "VmServiceConfig",
    "VmSettings",
    "load_config",
    "load_config_dicts",
]
