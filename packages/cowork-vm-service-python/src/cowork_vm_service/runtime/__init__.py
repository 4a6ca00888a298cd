"""
运行时层：线格式、连接、事件中枢、分发器、服务装配、socket server 与客户端。

说明：
- 子模块按需导入；本包不在 import 时拉起任何线程或 socket。
"""

from __future__ import annotations

__all__ = [
    "client",
    "connection",
    "dispatcher",
    "events",
    "framing",
    "paths",
    "protocol",
    "server",
    "service",
]
