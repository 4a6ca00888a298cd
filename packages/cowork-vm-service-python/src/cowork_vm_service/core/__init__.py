"""
核心组件：环境清洗、进程监管、VM 生命周期、宿主机文件辅助与错误分类。
"""

from __future__ import annotations

__all__ = [
    "env_sanitizer",
    "errors",
    "host_fs",
    "lifecycle",
    "supervisor",
]
