from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.config import settings
from app.services.notification_hub import WebSocketSubscriber, hub

router = APIRouter()


# 订阅某本书的 audio_ready 事件；连接断开即退订
@router.websocket("/books/{book_id}")
async def book_events(websocket: WebSocket, book_id: str) -> None:
    await websocket.accept()
    subscriber = WebSocketSubscriber(
        websocket,
        asyncio.get_running_loop(),
        timeout=settings.notification_send_timeout_seconds,
    )
    hub.subscribe(book_id, subscriber)
    try:
        # 只推送不接收，读取仅用于感知断开
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(book_id, subscriber)
