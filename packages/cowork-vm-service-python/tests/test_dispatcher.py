from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List

from cowork_vm_service.config.loader import load_config_dicts
from cowork_vm_service.runtime.dispatcher import MethodSpec, RpcDispatcher
from cowork_vm_service.runtime.protocol import EmptyParams
from cowork_vm_service.runtime.service import VmService

ALL_METHODS = [
    "configure",
    "createVM",
    "startVM",
    "stopVM",
    "isRunning",
    "isGuestConnected",
    "spawn",
    "kill",
    "writeStdin",
    "isProcessRunning",
    "mountPath",
    "readFile",
    "installSdk",
    "addApprovedOauthToken",
    "subscribeEvents",
]


class _Conn:
    def __init__(self) -> None:
        self.frames: List[bytes] = []
        self.callbacks: List[Callable[[Any], None]] = []

    def send_frame(self, frame: bytes) -> bool:
        self.frames.append(frame)
        return True

    def add_close_callback(self, callback: Callable[[Any], None]) -> None:
        self.callbacks.append(callback)

    def close(self, *, graceful: bool = True) -> None:
        for cb in self.callbacks:
            cb(self)


def _service(tmp_path: Path, **overrides: Any) -> VmService:
    cfg = load_config_dicts([overrides]) if overrides else None
    return VmService(cfg, home=tmp_path)


def test_registry_exposes_every_method(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    assert sorted(svc.dispatcher.method_names) == sorted(ALL_METHODS)


def test_unknown_method_is_error_response(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    assert svc.handle({"method": "nope", "params": {}}) == {"success": False, "error": "Unknown method: nope"}
    assert svc.handle({"params": {}})["success"] is False


def test_missing_params_default_to_empty_object(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    assert svc.handle({"method": "isRunning"}) == {"success": True, "result": {"running": False}}
    assert svc.handle({"method": "isGuestConnected", "params": None}) == {
        "success": True,
        "result": {"connected": False},
    }


def test_invalid_params_are_rejected_before_handler(tmp_path: Path) -> None:
    svc = _service(tmp_path)

    resp = svc.handle({"method": "spawn", "params": {"id": "x"}})
    assert resp["success"] is False
    assert resp["error"].startswith("Invalid params for spawn:")
    assert "command" in resp["error"]

    resp2 = svc.handle({"method": "configure", "params": {"memoryMB": "lots"}})
    assert resp2["success"] is False
    assert resp2["error"].startswith("Invalid params for configure:")

    resp3 = svc.handle({"method": "kill", "params": []})
    assert resp3 == {"success": False, "error": "Invalid params for kill: params must be an object"}


def test_unknown_params_ignored_by_default_and_rejected_in_strict_mode(tmp_path: Path) -> None:
    lenient = _service(tmp_path)
    assert lenient.handle({"method": "configure", "params": {"memoryMB": 1024, "gpu": True}})["success"] is True

    strict = _service(tmp_path, rpc={"strict_params": True})
    resp = strict.handle({"method": "configure", "params": {"memoryMB": 1024, "gpu": True}})
    assert resp == {"success": False, "error": "Unknown params for configure: gpu"}
    # 字段名（snake_case）与线上别名都可接受
    assert strict.handle({"method": "configure", "params": {"memory_mb": 1024}})["success"] is True


def test_handler_exception_becomes_error_response(tmp_path: Path) -> None:
    def _boom(_params: Any, _conn: Any) -> dict:
        raise RuntimeError("exploded")

    dispatcher = RpcDispatcher([MethodSpec("boom", EmptyParams, _boom)])
    assert dispatcher.handle({"method": "boom"}) == {"success": False, "error": "exploded"}

    svc = _service(tmp_path)
    resp = svc.handle({"method": "kill", "params": {"id": "x", "signal": "SIGWHAT"}})
    assert resp["success"] is False
    assert "Unknown signal" in resp["error"]


def test_lifecycle_methods_through_dispatcher(tmp_path: Path) -> None:
    svc = _service(tmp_path, vm={"guest_connect_delay_ms": 10_000})
    ok = {"success": True, "result": {}}

    assert svc.handle({"method": "configure", "params": {"memoryMB": 2048, "cpuCount": 2}}) == ok
    assert svc.handle({"method": "createVM", "params": {"bundlePath": "/b", "diskSizeGB": 5}}) == ok
    assert svc.handle({"method": "startVM", "params": {"bundlePath": "/b"}}) == ok
    assert svc.handle({"method": "startVM", "params": {"bundlePath": "/b"}}) == ok
    assert svc.handle({"method": "isRunning"})["result"] == {"running": True}
    assert svc.handle({"method": "stopVM"}) == ok
    assert svc.handle({"method": "isRunning"})["result"] == {"running": False}
    assert svc.handle({"method": "addApprovedOauthToken", "params": {"token": "t"}}) == ok
    assert svc.handle({"method": "installSdk", "params": {"sdkSubpath": "x", "version": "1"}}) == ok



def test_bundle_path_is_optional_for_create_and_start(tmp_path: Path) -> None:
    svc = _service(tmp_path, vm={"guest_connect_delay_ms": 10_000})
    ok = {"success": True, "result": {}}

    assert svc.handle({"method": "createVM", "params": {}}) == ok
    assert svc.handle({"method": "startVM", "params": {}}) == ok
    assert svc.handle({"method": "isRunning"})["result"] == {"running": True}
    assert svc.lifecycle.state.bundle_path is None

    svc.handle({"method": "stopVM"})
    assert svc.handle({"method": "startVM", "params": {"memoryGB": 2}}) == ok
    assert svc.lifecycle.state.memory_mb == 2048
    svc.handle({"method": "stopVM"})


def test_mount_path_and_read_file(tmp_path: Path) -> None:
    svc = _service(tmp_path)

    resp = svc.handle({"method": "mountPath", "params": {"processId": "p", "subpath": "/proj/a", "mode": "rw"}})
    assert resp == {"success": True, "result": {"guestPath": str(tmp_path / "proj" / "a")}}

    f = tmp_path / "note.txt"
    f.write_bytes("hé\xff".encode("utf-8") + b"\xff")
    resp2 = svc.handle({"method": "readFile", "params": {"processName": "p", "filePath": str(f)}})
    assert resp2["success"] is True
    assert resp2["result"]["content"].startswith("hé")

    resp3 = svc.handle({"method": "readFile", "params": {"filePath": str(tmp_path / "missing.txt")}})
    assert resp3["success"] is True
    assert "error" in resp3["result"]


def test_process_queries_for_unknown_ids(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    assert svc.handle({"method": "isProcessRunning", "params": {"id": "zzz"}})["result"] == {"running": False}
    assert svc.handle({"method": "writeStdin", "params": {"id": "zzz", "data": "x"}})["success"] is True
    assert svc.handle({"method": "kill", "params": {"id": "zzz"}})["success"] is True


def test_subscribe_events_registers_the_connection(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    conn = _Conn()

    assert svc.handle({"method": "subscribeEvents"}, conn) == {"success": True, "result": {}}
    assert svc.hub.subscriber_count() == 1

    svc.handle({"method": "stopVM"})
    assert len(conn.frames) == 1

    conn.close()
    assert svc.hub.subscriber_count() == 0

    assert svc.handle({"method": "subscribeEvents"})["success"] is False
