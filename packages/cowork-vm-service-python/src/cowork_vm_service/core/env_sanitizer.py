"""
子进程环境清洗（env / argv / cwd）。

背景：
- daemon 从桌面应用继承环境，其中包含只对 daemon 自身有意义的变量（例如防嵌套的会话标记）
  以及 UI 运行时内部变量，这些不得传给子进程；
- 调用方传入的 env/argv/cwd 可能引用“隔离文件系统内”的路径（`/sessions/...`），
  在宿主机上并不存在，需要剔除或回退。

约束：
- 本模块所有函数都是全函数（不抛异常）；无法识别的值一律原样透传，
  只有两处显式的隔离路径前缀判断会改变结果。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from cowork_vm_service.config.loader import SandboxSettings

logger = logging.getLogger(__name__)

SANDBOX_ROOT_PREFIX = "/sessions/"


def is_sandbox_path(value: Any, prefix: str = SANDBOX_ROOT_PREFIX) -> bool:
    """
    判断一个值是否“看起来像”隔离命名空间内的路径。

    说明：
    - provisional：仅做固定前缀匹配，真实隔离边界落地后应替换为权威判断；
    - 非字符串一律视为非隔离路径。
    """

    return isinstance(value, str) and bool(prefix) and value.startswith(prefix)


def _stringify_env(env: Optional[Mapping[Any, Any]]) -> Dict[str, str]:
    """将任意 mapping 归一化为 `Dict[str, str]`（丢弃 None 值与空 key）。"""

    out: Dict[str, str] = {}
    if not env:
        return out
    for k, v in env.items():
        if v is None:
            continue
        key = str(k)
        if not key:
            continue
        out[key] = v if isinstance(v, str) else str(v)
    return out


def build_child_env(
    inherited: Optional[Mapping[Any, Any]],
    requested: Optional[Mapping[Any, Any]],
    settings: SandboxSettings,
) -> Dict[str, str]:
    """
    构造子进程环境。

    合并顺序：
    1) daemon 继承的环境，去掉会话标记、UI 运行时变量与 `strip_inherited_prefixes` 前缀变量
    2) 覆盖调用方传入的环境（仅去掉会话标记与 UI 运行时变量）
    3) 覆盖固定的终端类型提示 `TERM`

    最后：若 `config_dir_env` 的值是隔离路径，整项删除，让子进程回退到自身默认目录。

    参数：
    - inherited：daemon 自身环境（通常为 os.environ）
    - requested：调用方传入的 env
    - settings：清洗规则
    """

    blocked = {settings.session_marker_env, *settings.strip_env}
    prefixes = tuple(p for p in settings.strip_inherited_prefixes if p)

    merged: Dict[str, str] = {}
    for k, v in _stringify_env(inherited).items():
        if k in blocked or (prefixes and k.startswith(prefixes)):
            continue
        merged[k] = v
    for k, v in _stringify_env(requested).items():
        if k in blocked:
            continue
        merged[k] = v
    merged["TERM"] = settings.term

    config_dir = merged.get(settings.config_dir_env)
    if is_sandbox_path(config_dir, settings.path_prefix):
        logger.debug("spawn: removing guest %s: %s", settings.config_dir_env, config_dir)
        del merged[settings.config_dir_env]
    return merged


def filter_args(args: Optional[Sequence[Any]], settings: SandboxSettings) -> List[str]:
    """
    剔除 `<flag> <隔离路径>` 形式的参数对（flag 与其值一起删除）。

    参数：
    - args：原始参数列表
    - settings：清洗规则（`path_flags` / `path_prefix`）
    """

    items = [a if isinstance(a, str) else str(a) for a in (args or [])]
    flags = set(settings.path_flags)
    out: List[str] = []
    i = 0
    while i < len(items):
        cur = items[i]
        if cur in flags and i + 1 < len(items) and is_sandbox_path(items[i + 1], settings.path_prefix):
            logger.debug("spawn: removing %s %s (guest path)", cur, items[i + 1])
            i += 2
            continue
        out.append(cur)
        i += 1
    return out


def resolve_cwd(
    cwd: Optional[str],
    shared_cwd: Optional[str],
    *,
    home: Path,
    settings: SandboxSettings,
) -> Path:
    """
    解析子进程工作目录。

    优先级：
    1) 显式共享工作目录：拼接在 home 之下（去掉前导 `/`）
    2) cwd 是隔离路径：回退 home
    3) cwd 非空：使用 cwd
    4) 其它：home

    最后若所选目录在宿主机不存在，回退 home。
    """

    if shared_cwd:
        work_dir = home / str(shared_cwd).lstrip("/")
    elif is_sandbox_path(cwd, settings.path_prefix):
        logger.debug("spawn: cwd is guest path %r, using home dir", cwd)
        work_dir = home
    elif cwd:
        work_dir = Path(str(cwd))
    else:
        work_dir = home

    try:
        exists = work_dir.is_dir()
    except OSError:
        exists = False
    if not exists:
        logger.debug("spawn: cwd %s does not exist, using home dir", work_dir)
        work_dir = home
    return work_dir


@dataclass(frozen=True)
class LaunchPlan:
    """已清洗的启动参数（args/cwd/env）。"""

    args: List[str]
    cwd: Path
    env: Dict[str, str]


def prepare_launch(
    *,
    args: Optional[Sequence[Any]],
    cwd: Optional[str],
    shared_cwd: Optional[str],
    env: Optional[Mapping[Any, Any]],
    settings: SandboxSettings,
    inherited: Optional[Mapping[Any, Any]] = None,
    home: Optional[Path] = None,
) -> LaunchPlan:
    """
    汇总 env/args/cwd 清洗结果。

    参数：
    - inherited：默认 os.environ
    - home：默认 Path.home()
    """

    return LaunchPlan(
        args=filter_args(args, settings),
        cwd=resolve_cwd(cwd, shared_cwd, home=home or Path.home(), settings=settings),
        env=build_child_env(os.environ if inherited is None else inherited, env, settings),
    )
