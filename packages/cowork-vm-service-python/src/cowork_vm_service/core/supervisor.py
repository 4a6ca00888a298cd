"""
进程监管（Session 表 / 子进程 stdio 多路复用为事件）。

语义：
- 每个 Session 对应一个由调用方指定 id 的子进程；存活期间 id 唯一，重复 spawn 直接拒绝；
- 可执行文件解析顺序：installSdk 记录的 SDK 二进制 → command 本身（已存在的路径）→ PATH 查找；
  解析失败时合成 `stderr` + `exit(127)` 事件并返回 `{}`（不抛错、不建 Session）；
- stdout/stderr 各一个读线程，退出监视线程在两者读尽后才发 `exit`，
  因此同一 id 的所有数据事件都先于 exit 事件到达；
- kill/writeStdin 对调用方都是非阻塞的：kill 只发信号，写 stdin 交给每个 Session 的写线程。

说明：
- 当前 backend 直接在宿主机执行命令（VM 仅为模拟），隔离仅限于 env/argv/cwd 清洗。
"""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional, Union

from cowork_vm_service.config.loader import SandboxSettings
from cowork_vm_service.core.env_sanitizer import prepare_launch
from cowork_vm_service.core.errors import SessionConflictError
from cowork_vm_service.runtime.protocol import (
    ErrorEvent,
    ExitEvent,
    InstallSdkParams,
    KillParams,
    OutputEvent,
    ProcessIdParams,
    ServiceEvent,
    SpawnParams,
    WriteStdinParams,
)

logger = logging.getLogger(__name__)

NOT_FOUND_EXIT_CODE = 127
# 子进程退出后等待 stdout/stderr 读尽的上限（孙进程可能继续持有管道）
PUMP_DRAIN_TIMEOUT_SEC = 5.0
_READ_CHUNK = 64 * 1024
_STDIN_EOF = object()


def parse_signal(value: Union[int, str, None]) -> int:
    """
    解析信号参数。

    规则：
    - None/空串：SIGTERM
    - int 或数字串：按信号编号
    - 字符串：`SIGKILL` / `KILL`（大小写不敏感）

    异常：
    - ValueError：未知信号
    """

    if value is None or (isinstance(value, str) and not value.strip()):
        return int(signal.SIGTERM)
    if isinstance(value, bool):
        raise ValueError(f"Unknown signal: {value}")
    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        num = int(value)
        try:
            return int(signal.Signals(num))
        except ValueError:
            raise ValueError(f"Unknown signal: {value}") from None
    name = str(value).strip().upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return int(signal.Signals[name])
    except KeyError:
        raise ValueError(f"Unknown signal: {value}") from None


def exit_status(returncode: int) -> tuple[Optional[int], Optional[str]]:
    """将 Popen.returncode 转为 `(exitCode, signal)`；被信号终止时 exitCode 为 None。"""

    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


def _is_executable_file(path: Union[str, Path]) -> bool:
    """判断路径是否为可执行的普通文件。"""

    try:
        return os.path.isfile(path) and os.access(path, os.X_OK)
    except (OSError, ValueError):
        return False


@dataclass
class Session:
    """一个被追踪的执行单元（一个子进程）。"""

    id: str
    name: Optional[str]
    command: str
    args: List[str]
    cwd: Path
    env: Dict[str, Any]
    shared_cwd: Optional[str]
    one_shot: bool
    proc: "subprocess.Popen[bytes]"
    created_at_ms: int
    stdin_queue: "queue.Queue[Any]" = field(default_factory=queue.Queue)
    stdin_closed: bool = False
    exit_emitted: bool = False

    @property
    def pid(self) -> int:
        """子进程 pid。"""

        return int(self.proc.pid)


class ProcessSupervisor:
    """
    子进程监管器。

    线程模型：
    - 每个 Session：stdout 读线程、stderr 读线程、stdin 写线程、退出监视线程；
    - Session 表与 SDK 记录由共享锁保护（与事件中枢/生命周期同一把锁）。
    """

    def __init__(
        self,
        *,
        emit: Callable[[ServiceEvent], Any],
        settings: SandboxSettings,
        lock: Optional[threading.RLock] = None,
        home: Optional[Path] = None,
        inherited_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        创建监管器。

        参数：
        - emit：事件出口（通常为 `EventHub.broadcast`）
        - settings：env/argv/cwd 清洗规则
        - lock：共享状态锁（缺省自建）
        - home：用户 home（缺省 Path.home()；测试可注入）
        - inherited_env：daemon 继承环境（缺省 os.environ；测试可注入）
        """

        self._emit = emit
        self._settings = settings
        self._lock = lock or threading.RLock()
        self._home = home
        self._inherited_env = inherited_env
        self._sessions: Dict[str, Session] = {}
        self._sdk_binary_path: Optional[Path] = None

    @property
    def home(self) -> Path:
        """解析用的 home 目录。"""

        return self._home or Path.home()

    @property
    def sdk_binary_path(self) -> Optional[Path]:
        """installSdk 记录的 SDK 可执行文件路径。"""

        with self._lock:
            return self._sdk_binary_path

    def _env(self) -> Mapping[str, str]:
        """daemon 继承环境。"""

        return os.environ if self._inherited_env is None else self._inherited_env

    # --- SDK ---

    def install_sdk(self, params: InstallSdkParams) -> dict:
        """
        记录下载好的 SDK 可执行文件：`~/<sdkSubpath>/<version>/<sdk_binary_name>`。

        说明：
        - 候选路径不存在或不可执行时只记日志，保留原有记录；
        - 之后的 spawn 优先使用该路径。
        """

        logger.debug("installSdk: %s@%s", params.sdk_subpath, params.version)
        if not params.sdk_subpath or not params.version:
            return {}
        candidate = self.home / params.sdk_subpath.lstrip("/") / params.version / self._settings.sdk_binary_name
        if _is_executable_file(candidate):
            with self._lock:
                self._sdk_binary_path = candidate
            logger.debug("SDK binary found: %s", candidate)
        else:
            logger.debug("SDK binary not found or not executable: %s", candidate)
        return {}

    # --- Sessions ---

    def has(self, session_id: str) -> bool:
        """Session 是否存活（仍在表中）。"""

        with self._lock:
            return session_id in self._sessions

    def session_ids(self) -> List[str]:
        """当前存活 Session id 快照。"""

        with self._lock:
            return list(self._sessions.keys())

    def is_process_running(self, params: ProcessIdParams) -> dict:
        """RPC：isProcessRunning（纯读）。"""

        return {"running": self.has(params.id)}

    def resolve_command(self, command: str) -> Optional[str]:
        """
        解析实际执行的二进制。

        优先级：
        1) installSdk 记录的 SDK 二进制（存在且可执行）
        2) command 本身（已存在的路径）
        3) 在 PATH 中按 basename 查找

        返回：
        - 解析出的路径；全部失败时返回 None
        """

        sdk = self.sdk_binary_path
        if sdk is not None and _is_executable_file(sdk):
            logger.debug("spawn: using SDK binary: %s", sdk)
            return str(sdk)
        if command and os.path.exists(command):
            return command
        base = os.path.basename(command or "")
        if not base:
            return None
        found = shutil.which(base, path=self._env().get("PATH"))
        if found:
            logger.debug("spawn: resolved via PATH: %s", found)
        return found

    def spawn(self, params: SpawnParams) -> dict:
        """
        RPC：spawn。

        返回：
        - `{}`；命令找不到/启动失败都以事件上报，而不是 RPC 错误

        异常：
        - SessionConflictError：同 id 的 Session 仍存活
        """

        sid = params.id
        logger.debug("spawn: id=%s, name=%s, command=%s", sid, params.name, params.command)
        if self.has(sid):
            raise SessionConflictError(sid)

        actual = self.resolve_command(params.command)
        if actual is None:
            self._emit(OutputEvent(type="stderr", id=sid, data=f"Error: {params.command} not found\n"))
            self._emit(ExitEvent(id=sid, exit_code=NOT_FOUND_EXIT_CODE, signal=None))
            return {}

        plan = prepare_launch(
            args=params.args,
            cwd=params.cwd,
            shared_cwd=params.shared_cwd_path,
            env=params.env,
            settings=self._settings,
            inherited=self._env(),
            home=self.home,
        )
        logger.debug("spawn: command=%s, args=%s, cwd=%s", actual, plan.args, plan.cwd)

        with self._lock:
            # 加锁后复查：并发 spawn 同一 id 时只允许一个成功
            if sid in self._sessions:
                raise SessionConflictError(sid)
            try:
                proc = subprocess.Popen(  # noqa: S603
                    [actual, *plan.args],
                    cwd=str(plan.cwd),
                    env=plan.env,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    close_fds=True,
                    start_new_session=True,
                )
            except OSError as e:
                logger.error("spawn %s failed: %s", sid, e)
                self._emit(ErrorEvent(id=sid, message=str(e)))
                return {}

            session = Session(
                id=sid,
                name=params.name,
                command=actual,
                args=plan.args,
                cwd=plan.cwd,
                env=dict(params.env or {}),
                shared_cwd=params.shared_cwd_path,
                one_shot=bool(params.one_shot),
                proc=proc,
                created_at_ms=int(time.time() * 1000),
            )
            self._sessions[sid] = session
            logger.debug("spawn: pid=%d", session.pid)

            pumps = [
                threading.Thread(
                    target=self._pump, args=(session, proc.stdout, "stdout"), name=f"{sid}-stdout", daemon=True
                ),
                threading.Thread(
                    target=self._pump, args=(session, proc.stderr, "stderr"), name=f"{sid}-stderr", daemon=True
                ),
            ]
            for t in pumps:
                t.start()
            threading.Thread(target=self._stdin_loop, args=(session,), name=f"{sid}-stdin", daemon=True).start()
            threading.Thread(target=self._watch, args=(session, pumps), name=f"{sid}-watch", daemon=True).start()
        return {}

    def kill(self, params: KillParams) -> dict:
        """
        RPC：kill（best-effort、异步；调用方需等待后续 exit 事件）。

        异常：
        - ValueError：未知信号名
        """

        sig = parse_signal(params.signal)
        with self._lock:
            session = self._sessions.get(params.id)
        if session is None:
            return {}
        try:
            session.proc.send_signal(sig)
        except OSError as e:
            logger.debug("Kill failed for %s: %s", params.id, e)
        return {}

    def write_stdin(self, params: WriteStdinParams) -> dict:
        """RPC：writeStdin（入队即返回；Session 不存在或 stdin 已关闭时 no-op）。"""

        with self._lock:
            session = self._sessions.get(params.id)
            if session is None or session.stdin_closed:
                return {}
            session.stdin_queue.put(params.data.encode("utf-8"))
        return {}

    def kill_all(self) -> int:
        """
        终止所有 Session 并清空 Session 表（stopVM 使用）。

        返回：
        - 发出终止信号的 Session 数
        """

        with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
        killed = 0
        for sid, session in sessions:
            try:
                session.proc.terminate()
                killed += 1
            except OSError as e:
                logger.debug("Error killing process %s: %s", sid, e)
        return killed

    # --- 线程体 ---

    def _pump(self, session: Session, stream: Optional[IO[bytes]], kind: str) -> None:
        """读线程：把 stdout/stderr 分块转成事件（增量 UTF-8 解码，避免切断多字节字符）。"""

        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                try:
                    chunk = stream.read(_READ_CHUNK)
                except (OSError, ValueError):
                    break
                if not chunk:
                    break
                self._emit_output(session, kind, decoder.decode(chunk))
            self._emit_output(session, kind, decoder.decode(b"", final=True))
        finally:
            # 管道可能被孙进程持有到 exit 之后；由读线程自己在 EOF 时关闭
            try:
                stream.close()
            except OSError:
                pass

    def _emit_output(self, session: Session, kind: str, text: str) -> None:
        """发出一个输出事件；exit 已发出后的迟到输出直接丢弃（保证 exit 最后到达）。"""

        if not text:
            return
        with self._lock:
            if session.exit_emitted:
                logger.debug("dropping late %s output for %s", kind, session.id)
                return
            self._emit(OutputEvent(type=kind, id=session.id, data=text))  # type: ignore[arg-type]

    def _stdin_loop(self, session: Session) -> None:
        """写线程：把入队数据写入子进程 stdin，直到 EOF 哨兵或管道断开。"""

        stdin = session.proc.stdin
        try:
            while stdin is not None:
                item = session.stdin_queue.get()
                if item is _STDIN_EOF:
                    break
                view = memoryview(item)
                while view:
                    written = stdin.write(view)
                    if written is None:
                        continue
                    view = view[written:]
        except (OSError, ValueError) as e:
            logger.debug("stdin closed for %s: %s", session.id, e)
        finally:
            with self._lock:
                session.stdin_closed = True
            if stdin is not None:
                try:
                    stdin.close()
                except OSError:
                    pass

    def _watch(self, session: Session, pumps: List[threading.Thread]) -> None:
        """退出监视线程：等待进程退出与输出读尽，移除 Session 并发 exit 事件。"""

        returncode = session.proc.wait()
        session.stdin_queue.put(_STDIN_EOF)
        for t in pumps:
            t.join(timeout=PUMP_DRAIN_TIMEOUT_SEC)
        exit_code, sig_name = exit_status(returncode)
        logger.debug("Process %s exited: code=%s, signal=%s", session.id, exit_code, sig_name)
        with self._lock:
            session.exit_emitted = True
            session.stdin_closed = True
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]
            self._emit(ExitEvent(id=session.id, exit_code=exit_code, signal=sig_name))
