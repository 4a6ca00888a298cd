from __future__ import annotations

import socket
import struct
import threading
from typing import Any, Callable, List

from cowork_vm_service.runtime.connection import Connection
from cowork_vm_service.runtime.events import EventHub
from cowork_vm_service.runtime.framing import FrameDecoder
from cowork_vm_service.runtime.protocol import ExitEvent, NetworkStatusEvent, OutputEvent


class _FakeSubscriber:
    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.frames: List[bytes] = []
        self.callbacks: List[Callable[[Any], None]] = []
        self.closed_with: List[bool] = []

    def send_frame(self, frame: bytes) -> bool:
        if not self.accept:
            return False
        self.frames.append(frame)
        return True

    def add_close_callback(self, callback: Callable[[Any], None]) -> None:
        self.callbacks.append(callback)

    def close(self, *, graceful: bool = True) -> None:
        self.closed_with.append(graceful)
        for cb in self.callbacks:
            cb(self)


def _decode_all(frames: List[bytes]) -> List[dict]:
    dec = FrameDecoder()
    out: List[dict] = []
    for f in frames:
        out.extend(dec.feed(f))
    return out


def test_broadcast_reaches_every_subscriber_in_order() -> None:
    hub = EventHub()
    a, b = _FakeSubscriber(), _FakeSubscriber()
    assert hub.subscribe(a) == {}
    assert hub.subscribe(b) == {}
    assert hub.subscribe(a) == {}
    assert hub.subscriber_count() == 2

    hub.broadcast(OutputEvent(type="stdout", id="s", data="x"))
    hub.broadcast(ExitEvent(id="s", exit_code=0))

    for sub in (a, b):
        assert _decode_all(sub.frames) == [
            {"type": "stdout", "id": "s", "data": "x"},
            {"type": "exit", "id": "s", "exitCode": 0, "signal": None},
        ]


def test_failed_subscriber_is_removed_and_others_still_receive() -> None:
    hub = EventHub()
    good, bad = _FakeSubscriber(), _FakeSubscriber(accept=False)
    hub.subscribe(bad)
    hub.subscribe(good)

    assert hub.broadcast(NetworkStatusEvent(status="connected")) == 1
    assert hub.subscriber_count() == 1
    assert bad.closed_with == [False]
    assert _decode_all(good.frames) == [{"type": "networkStatus", "status": "connected"}]


def test_closing_subscriber_unsubscribes_it() -> None:
    hub = EventHub()
    sub = _FakeSubscriber()
    hub.subscribe(sub)
    sub.close()
    assert hub.subscriber_count() == 0
    assert hub.broadcast({"type": "networkStatus", "status": "disconnected"}) == 0


def _recv_messages(sock: socket.socket, count: int) -> List[dict]:
    dec = FrameDecoder()
    out: List[dict] = []
    sock.settimeout(5.0)
    while len(out) < count:
        data = sock.recv(65536)
        if not data:
            break
        out.extend(dec.feed(data))
    return out


def test_connection_writes_frames_in_order() -> None:
    a, b = socket.socketpair()
    conn = Connection(a)
    conn.start()
    try:
        assert conn.send({"success": True, "result": {}})
        assert conn.send({"type": "stdout", "id": "1", "data": "y"})
        assert _recv_messages(b, 2) == [
            {"success": True, "result": {}},
            {"type": "stdout", "id": "1", "data": "y"},
        ]
    finally:
        conn.close()
        b.close()


def test_connection_graceful_close_flushes_queue() -> None:
    a, b = socket.socketpair()
    conn = Connection(a)
    conn.start()
    conn.send({"n": 1})
    conn.close()
    try:
        assert _recv_messages(b, 1) == [{"n": 1}]
        b.settimeout(5.0)
        assert b.recv(1) == b""
    finally:
        b.close()
    assert conn.send({"n": 2}) is False


def test_connection_queue_overflow_closes_connection() -> None:
    a, b = socket.socketpair()
    conn = Connection(a, queue_size=1)
    closed = threading.Event()
    conn.add_close_callback(lambda _c: closed.set())
    try:
        # writer 未启动：第一帧入队后队列已满
        assert conn.send({"n": 1}) is True
        assert conn.send({"n": 2}) is False
        assert conn.closed
        assert closed.is_set()

        late: List[Any] = []
        conn.add_close_callback(late.append)
        assert late == [conn]
    finally:
        b.close()


def test_hub_drops_connection_whose_queue_overflows() -> None:
    hub = EventHub()
    a, b = socket.socketpair()
    stalled = Connection(a, queue_size=2)
    healthy_frames: List[bytes] = []

    class _Healthy(_FakeSubscriber):
        def send_frame(self, frame: bytes) -> bool:
            healthy_frames.append(frame)
            return True

    healthy = _Healthy()
    hub.subscribe(stalled)
    hub.subscribe(healthy)
    try:
        for i in range(5):
            hub.broadcast(OutputEvent(type="stdout", id="s", data=str(i)))
        assert stalled.closed
        assert hub.subscriber_count() == 1
        assert len(healthy_frames) == 5
        assert struct.unpack(">I", healthy_frames[0][:4])[0] == len(healthy_frames[0]) - 4
    finally:
        b.close()
