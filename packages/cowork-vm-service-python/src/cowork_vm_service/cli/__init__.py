"""
CLI 子包（`cowork-vm-service` 命令入口）。
"""

from __future__ import annotations
