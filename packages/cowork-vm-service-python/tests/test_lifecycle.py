from __future__ import annotations

import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List

import pytest

from cowork_vm_service.config.loader import SandboxSettings, VmSettings
from cowork_vm_service.core.lifecycle import VmLifecycleManager
from cowork_vm_service.core.supervisor import ProcessSupervisor
from cowork_vm_service.runtime.protocol import (
    ConfigureParams,
    CreateVmParams,
    OauthTokenParams,
    SpawnParams,
    StartVmParams,
)


class _Events:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.items: List[Dict[str, Any]] = []

    def __call__(self, event: Any) -> None:
        with self._lock:
            self.items.append(event.to_wire())

    def network(self) -> List[str]:
        with self._lock:
            return [e["status"] for e in self.items if e["type"] == "networkStatus"]


def _manager(tmp_path: Path, delay_ms: int) -> tuple[VmLifecycleManager, ProcessSupervisor, _Events]:
    events = _Events()
    lock = threading.RLock()
    sup = ProcessSupervisor(emit=events, settings=SandboxSettings(), lock=lock, home=tmp_path)
    mgr = VmLifecycleManager(
        settings=VmSettings(guest_connect_delay_ms=delay_ms),
        supervisor=sup,
        emit=events,
        lock=lock,
    )
    return mgr, sup, events


def _wait_until(pred: Any, timeout_sec: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_sec
    while time.monotonic() < deadline:
        if pred():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met before timeout")


def test_configure_merges_only_provided_fields(tmp_path: Path) -> None:
    mgr, _sup, _ev = _manager(tmp_path, 500)
    assert mgr.state.memory_mb == 8192
    assert mgr.state.cpu_count == 4

    assert mgr.configure(ConfigureParams(memoryMB=4096)) == {}
    assert mgr.state.memory_mb == 4096
    assert mgr.state.cpu_count == 4

    mgr.configure(ConfigureParams(cpuCount=2))
    assert mgr.state.memory_mb == 4096
    assert mgr.state.cpu_count == 2


def test_create_vm_records_bundle_and_is_idempotent(tmp_path: Path) -> None:
    mgr, _sup, _ev = _manager(tmp_path, 500)
    mgr.create_vm(CreateVmParams(bundlePath="/b/one"))
    mgr.create_vm(CreateVmParams(bundlePath="/b/one", diskSizeGB=20))
    assert mgr.state.bundle_path == "/b/one"
    assert mgr.state.disk_size_gb == 20
    assert mgr.is_running() == {"running": False}


def test_start_vm_connects_guest_after_delay(tmp_path: Path) -> None:
    mgr, _sup, ev = _manager(tmp_path, 300)

    assert mgr.start_vm(StartVmParams(bundlePath="/b")) == {}
    assert mgr.is_running() == {"running": True}
    assert mgr.is_guest_connected() == {"connected": False}

    _wait_until(lambda: mgr.is_guest_connected() == {"connected": True})
    assert ev.network() == ["connected"]


def test_start_vm_when_running_is_noop(tmp_path: Path) -> None:
    mgr, _sup, ev = _manager(tmp_path, 50)
    mgr.start_vm(StartVmParams(bundlePath="/b"))
    _wait_until(lambda: mgr.is_guest_connected()["connected"])

    mgr.start_vm(StartVmParams(bundlePath="/b2", memoryGB=2))
    time.sleep(0.2)
    assert mgr.is_guest_connected() == {"connected": True}
    assert ev.network() == ["connected"]
    assert mgr.state.bundle_path == "/b2"
    assert mgr.state.memory_mb == 8192


def test_stop_vm_cancels_pending_guest_connect(tmp_path: Path) -> None:
    """stopVM 后，上一次启动遗留的握手定时器不得再置位 guestConnected。"""

    mgr, _sup, ev = _manager(tmp_path, 300)
    mgr.start_vm(StartVmParams(bundlePath="/b"))
    assert mgr.stop_vm() == {}

    time.sleep(0.6)
    assert mgr.is_running() == {"running": False}
    assert mgr.is_guest_connected() == {"connected": False}
    assert ev.network() == ["disconnected"]


def test_stop_vm_always_emits_disconnected(tmp_path: Path) -> None:
    mgr, _sup, ev = _manager(tmp_path, 500)
    mgr.stop_vm()
    mgr.stop_vm()
    assert ev.network() == ["disconnected", "disconnected"]


def test_restart_after_stop_connects_again(tmp_path: Path) -> None:
    mgr, _sup, ev = _manager(tmp_path, 50)
    mgr.start_vm(StartVmParams(bundlePath="/b"))
    _wait_until(lambda: mgr.is_guest_connected()["connected"])
    mgr.stop_vm()
    mgr.start_vm(StartVmParams(bundlePath="/b"))
    _wait_until(lambda: mgr.is_guest_connected()["connected"])
    assert ev.network() == ["connected", "disconnected", "connected"]


@pytest.mark.skipif(os.name == "nt", reason="POSIX-only daemon")
def test_stop_vm_kills_sessions(tmp_path: Path) -> None:
    mgr, sup, ev = _manager(tmp_path, 50)
    mgr.start_vm(StartVmParams(bundlePath="/b"))
    sup.spawn(SpawnParams(id="long", command=sys.executable, args=["-c", "import time; time.sleep(30)"]))
    assert sup.has("long")

    mgr.stop_vm()
    assert not sup.has("long")
    _wait_until(lambda: any(e.get("id") == "long" and e["type"] == "exit" for e in ev.items))


def test_oauth_tokens_are_recorded(tmp_path: Path) -> None:
    mgr, _sup, _ev = _manager(tmp_path, 500)
    assert mgr.add_approved_oauth_token(OauthTokenParams(token="abc")) == {}
    assert mgr.add_approved_oauth_token(OauthTokenParams()) == {}
    assert mgr.is_token_approved("abc")
    assert not mgr.is_token_approved("other")
