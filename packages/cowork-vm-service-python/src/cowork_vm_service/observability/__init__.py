"""
Observability（日志落盘）。

说明：
- daemon 以 detached + stdio 丢弃的方式被拉起，标准输出不可见；
- 因此日志一律写入 append-only 文件，便于事后排障。
"""

from __future__ import annotations

__all__ = [
    "logging_setup",
]
