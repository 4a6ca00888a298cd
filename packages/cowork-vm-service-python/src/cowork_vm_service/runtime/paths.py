from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from cowork_vm_service.config.loader import VmServiceConfig

# XDG_RUNTIME_DIR 未设置时的固定退路目录
FALLBACK_RUNTIME_DIR = Path("/tmp")


@dataclass(frozen=True)
class RuntimePaths:
    """daemon 关键文件路径集合。"""

    socket_path: Path
    log_file: Path


def get_runtime_paths(
    config: VmServiceConfig,
    *,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> RuntimePaths:
    """
    获取 socket 与日志文件路径。

    规则：
    - socket：`config.socket_path` 优先；否则 `$XDG_RUNTIME_DIR/<service_name>.sock`；
      XDG_RUNTIME_DIR 未设置时退回 `/tmp/<service_name>.sock`
    - 日志：`config.log_file` 优先；否则 `~/.config/Claude/logs/cowork_vm_daemon.log`

    参数：
    - config：已加载的配置
    - env：环境变量映射（默认 os.environ）
    - home：用户 home（默认 Path.home()）
    """

    env_map = os.environ if env is None else env
    if config.socket_path:
        socket_path = Path(config.socket_path).expanduser()
    else:
        runtime_dir = str(env_map.get("XDG_RUNTIME_DIR") or "").strip()
        base = Path(runtime_dir) if runtime_dir else FALLBACK_RUNTIME_DIR
        socket_path = base / f"{config.service_name}.sock"

    if config.log_file:
        log_file = Path(config.log_file).expanduser()
    else:
        log_file = (home or Path.home()) / ".config" / "Claude" / "logs" / "cowork_vm_daemon.log"
    return RuntimePaths(socket_path=socket_path, log_file=log_file)
