"""
宿主机文件辅助（mountPath / readFile）。

说明：
- 当前 backend 下 guest 即宿主机，“挂载”只是把子路径映射到 home 下，不做任何持久化；
- readFile 的读取失败以结果对象 `{"error": ...}` 返回，而不是 RPC 错误。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from cowork_vm_service.runtime.protocol import MountPathParams, ReadFileParams

logger = logging.getLogger(__name__)


class HostFilesystem:
    """宿主机文件辅助。"""

    def __init__(self, *, home: Optional[Path] = None) -> None:
        """
        参数：
        - home：用户 home（缺省 Path.home()；测试可注入）
        """

        self._home = home

    @property
    def home(self) -> Path:
        """解析用的 home 目录。"""

        return self._home or Path.home()

    def mount_path(self, params: MountPathParams) -> dict:
        """RPC：mountPath，返回 `{"guestPath": <home>/<subpath>}`。"""

        subpath = (params.subpath or "").lstrip("/")
        guest = self.home / subpath if subpath else self.home
        logger.debug("mountPath: %s -> %s (mode=%s)", params.subpath, guest, params.mode)
        return {"guestPath": str(guest)}

    def read_file(self, params: ReadFileParams) -> dict:
        """RPC：readFile（UTF-8，非法字节替换）。"""

        path = Path(params.file_path).expanduser()
        try:
            content = path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            logger.debug("readFile failed: %s: %s", path, e)
            return {"error": str(e)}
        return {"content": content}
