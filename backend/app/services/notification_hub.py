from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Dict, List, Protocol

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    def send_json(self, event: Dict[str, Any]) -> None: ...


class WebSocketSubscriber:
    """Adapts a WebSocket owned by the server event loop for worker threads."""

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop, timeout: float = 5.0) -> None:
        self.websocket = websocket
        self.loop = loop
        self.timeout = timeout

    def send_json(self, event: Dict[str, Any]) -> None:
        future = asyncio.run_coroutine_threadsafe(self.websocket.send_json(event), self.loop)
        try:
            future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            # 取消卡住的发送，避免在事件循环上堆积
            future.cancel()
            raise

    def __repr__(self) -> str:
        client = getattr(self.websocket, "client", None)
        return f"WebSocketSubscriber({client})"


class NotificationHub:
    """Registry of live subscribers per book with best-effort fan-out.

    Events are not buffered: a subscriber only sees what is broadcast while
    it is registered.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, book_id: str, subscriber: Subscriber) -> None:
        with self._lock:
            bucket = self._subscribers.setdefault(book_id, [])
            if subscriber not in bucket:
                bucket.append(subscriber)
            count = len(bucket)
        logger.info("Subscriber connected for book %s (%d total)", book_id, count)

    def unsubscribe(self, book_id: str, subscriber: Subscriber) -> None:
        with self._lock:
            bucket = self._subscribers.get(book_id)
            if not bucket:
                return
            if subscriber in bucket:
                bucket.remove(subscriber)
            if not bucket:
                del self._subscribers[book_id]
        logger.info("Subscriber disconnected for book %s", book_id)

    def subscriber_count(self, book_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(book_id, ()))

    def broadcast(self, book_id: str, event: Dict[str, Any]) -> int:
        # 锁内只做快照，发送在锁外进行，慢连接不阻塞订阅/退订
        with self._lock:
            targets = list(self._subscribers.get(book_id, ()))
        delivered = 0
        for subscriber in targets:
            try:
                subscriber.send_json(event)
            except Exception as exc:
                logger.warning(
                    "Error sending %s to %r for book %s: %s",
                    event.get("type"),
                    subscriber,
                    book_id,
                    exc,
                )
                continue
            delivered += 1
        if targets:
            logger.info(
                "Broadcast %s for book %s to %d/%d subscribers",
                event.get("type"),
                book_id,
                delivered,
                len(targets),
            )
        return delivered


# 进程内共享实例
hub = NotificationHub()
