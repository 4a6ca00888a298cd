"""
事件中枢（订阅集合 + 广播）。

约束：
- 订阅集合进程级唯一，与 Session 表/生命周期状态共用同一把锁，保证（取消）注册与投递不竞态；
- 广播只做入队（不阻塞）；某个订阅方投递失败时只移除它，其余订阅方照常收到事件；
- 连接关闭（包括对端非正常断开）时自动移除订阅。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Mapping, Optional, Protocol, Union

from cowork_vm_service.runtime.framing import encode_frame
from cowork_vm_service.runtime.protocol import ServiceEvent

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    """可接收事件帧的连接（`runtime.connection.Connection` 满足该协议）。"""

    def send_frame(self, frame: bytes) -> bool:
        """入队一帧；失败返回 False。"""

        ...

    def add_close_callback(self, callback: Callable[[Any], None]) -> None:
        """注册关闭回调。"""

        ...

    def close(self, *, graceful: bool = True) -> None:
        """关闭连接。"""

        ...


class EventHub:
    """进程级事件中枢。"""

    def __init__(self, *, lock: Optional[threading.RLock] = None) -> None:
        """
        创建事件中枢。

        参数：
        - lock：共享状态锁（由 VmService 注入；缺省时自建）
        """

        self._lock = lock or threading.RLock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> dict:
        """
        注册订阅方（同一连接重复订阅视为一次）。

        返回：
        - `{}`（RPC 结果）
        """

        with self._lock:
            if any(s is subscriber for s in self._subscribers):
                return {}
            self._subscribers.append(subscriber)
            count = len(self._subscribers)
        subscriber.add_close_callback(self.unsubscribe)
        logger.debug("subscriber added (total=%d)", count)
        return {}

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """移除订阅方（不存在时 no-op）。"""

        with self._lock:
            before = len(self._subscribers)
            self._subscribers = [s for s in self._subscribers if s is not subscriber]
            removed = before != len(self._subscribers)
        if removed:
            logger.debug("subscriber removed")

    def subscriber_count(self) -> int:
        """当前订阅方数量。"""

        with self._lock:
            return len(self._subscribers)

    def broadcast(self, event: Union[ServiceEvent, Mapping[str, Any]]) -> int:
        """
        向所有订阅方投递一个事件。

        参数：
        - event：事件模型或已是线上形状的 dict

        返回：
        - 成功投递的订阅方数量
        """

        message = event.to_wire() if isinstance(event, ServiceEvent) else dict(event)
        frame = encode_frame(message)
        delivered = 0
        dead: List[Subscriber] = []
        with self._lock:
            for s in list(self._subscribers):
                try:
                    ok = s.send_frame(frame)
                except Exception as e:
                    logger.debug("Failed to send event: %s", e)
                    ok = False
                if ok:
                    delivered += 1
                else:
                    dead.append(s)
            if dead:
                self._subscribers = [s for s in self._subscribers if all(s is not d for d in dead)]
        for s in dead:
            try:
                s.close(graceful=False)
            except Exception:
                logger.debug("closing dead subscriber failed", exc_info=True)
        return delivered
