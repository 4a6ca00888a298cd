"""
cowork-vm-service CLI（serve/call/events/status）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时输出 `{"ok": false, "issue": {...}}`

退出码：
- 0：成功
- 1：daemon 返回 `success: false`，或 daemon 运行期错误
- 2：参数错误 / 无法连接 daemon / 配置非法
- 3：socket 地址被占用（serve）
"""

from __future__ import annotations

import argparse
import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from cowork_vm_service.config.loader import VmServiceConfig, load_config
from cowork_vm_service.core.errors import ConfigError, RpcCallError, ServiceIssue
from cowork_vm_service.observability.logging_setup import configure_logging
from cowork_vm_service.runtime.client import VmServiceClient
from cowork_vm_service.runtime.paths import get_runtime_paths
from cowork_vm_service.runtime.server import run_server


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _dump_issue(issue: ServiceIssue, *, pretty: bool) -> None:
    """输出失败 JSON。"""

    _dump_json_to_stdout({"ok": False, "issue": issue.to_dict()}, pretty=pretty)


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="cowork-vm-service",
        description="Cowork VM Service CLI（serve/call/events/status）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--socket", default=None, help="Socket path (default: $XDG_RUNTIME_DIR/cowork-vm-service.sock).")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    serve = root_sub.add_parser("serve", help="Run the daemon in the foreground")
    _add_common_flags(serve)
    serve.add_argument("--debug", action="store_true", help="Enable debug logging.")

    call = root_sub.add_parser("call", help="Send one RPC request")
    _add_common_flags(call)
    call.add_argument("method", help="RPC method name (e.g. isRunning, spawn).")
    call.add_argument("--params", default=None, help="Params as a JSON object.")
    call.add_argument("--timeout", type=float, default=5.0, help="Socket timeout in seconds.")

    events = root_sub.add_parser("events", help="Subscribe and print events as JSON lines")
    _add_common_flags(events)
    events.add_argument("--count", type=int, default=None, help="Stop after N events.")

    status = root_sub.add_parser("status", help="Show VM running/guest-connected state")
    _add_common_flags(status)
    return parser


def _load_cli_config(args: argparse.Namespace) -> VmServiceConfig:
    """
    加载配置（默认 + --config overlays + 环境变量），并应用 --socket/--debug。

    异常：
    - ConfigError：配置非法
    """

    config = load_config([Path(p) for p in args.config])
    updates: Dict[str, Any] = {}
    if args.socket:
        updates["socket_path"] = str(args.socket)
    if getattr(args, "debug", False):
        updates["debug"] = True
    return config.model_copy(update=updates) if updates else config


def _handle_serve(args: argparse.Namespace, config: VmServiceConfig) -> int:
    """serve：前台运行 daemon。"""

    paths = get_runtime_paths(config)
    configure_logging(log_file=paths.log_file, debug=config.debug)
    return run_server(config, socket_path=paths.socket_path)


def _connection_issue(client: VmServiceClient, exc: OSError) -> ServiceIssue:
    """构造“无法连接 daemon”的 issue。"""

    return ServiceIssue(
        code="CLI_CONNECT_FAILED",
        message="Cannot reach the vm service.",
        details={"socket_path": str(client.socket_path), "reason": str(exc)},
    )


def _handle_call(args: argparse.Namespace, client: VmServiceClient) -> int:
    """call：一次 RPC 调用。"""

    params: Optional[Dict[str, Any]] = None
    if args.params:
        try:
            params = json.loads(args.params)
        except ValueError as exc:
            _dump_issue(
                ServiceIssue(code="CLI_PARAMS_INVALID", message="Params must be valid JSON.", details={"reason": str(exc)}),
                pretty=args.pretty,
            )
            return 2
        if not isinstance(params, dict):
            _dump_issue(
                ServiceIssue(
                    code="CLI_PARAMS_INVALID",
                    message="Params must be a JSON object.",
                    details={"actual": type(params).__name__},
                ),
                pretty=args.pretty,
            )
            return 2

    try:
        result = client.call(args.method, params, timeout_sec=args.timeout)
    except RpcCallError as exc:
        _dump_issue(
            ServiceIssue(code="RPC_CALL_FAILED", message=exc.message, details={"method": exc.method}),
            pretty=args.pretty,
        )
        return 1
    except OSError as exc:
        _dump_issue(_connection_issue(client, exc), pretty=args.pretty)
        return 2
    _dump_json_to_stdout({"ok": True, "method": args.method, "result": result}, pretty=args.pretty)
    return 0


def _handle_events(args: argparse.Namespace, client: VmServiceClient) -> int:
    """events：订阅并逐行输出事件（--count 达到后退出）。"""

    stop = threading.Event()
    seen = 0
    try:
        for event in client.subscribe(stop):
            _dump_json_to_stdout(event, pretty=args.pretty)
            seen += 1
            if args.count is not None and seen >= args.count:
                stop.set()
                break
    except RpcCallError as exc:
        _dump_issue(
            ServiceIssue(code="RPC_CALL_FAILED", message=exc.message, details={"method": exc.method}),
            pretty=args.pretty,
        )
        return 1
    except OSError as exc:
        _dump_issue(_connection_issue(client, exc), pretty=args.pretty)
        return 2
    except KeyboardInterrupt:
        return 0
    return 0


def _handle_status(args: argparse.Namespace, client: VmServiceClient) -> int:
    """status：isRunning + isGuestConnected 汇总。"""

    try:
        running = client.call("isRunning")
        connected = client.call("isGuestConnected")
    except RpcCallError as exc:
        _dump_issue(
            ServiceIssue(code="RPC_CALL_FAILED", message=exc.message, details={"method": exc.method}),
            pretty=args.pretty,
        )
        return 1
    except OSError as exc:
        _dump_issue(_connection_issue(client, exc), pretty=args.pretty)
        return 2
    _dump_json_to_stdout(
        {
            "ok": True,
            "socket_path": str(client.socket_path),
            "running": bool(running.get("running")),
            "guest_connected": bool(connected.get("connected")),
        },
        pretty=args.pretty,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    try:
        config = _load_cli_config(args)
    except ConfigError as exc:
        _dump_issue(
            ServiceIssue(code="CLI_CONFIG_INVALID", message="Config is invalid.", details={"reason": str(exc)}),
            pretty=args.pretty,
        )
        return 2

    if args.command == "serve":
        return _handle_serve(args, config)

    client = VmServiceClient(get_runtime_paths(config).socket_path, config=config)
    if args.command == "call":
        return _handle_call(args, client)
    if args.command == "events":
        return _handle_events(args, client)
    if args.command == "status":
        return _handle_status(args, client)

    parser.print_help()
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
