"""
learnbridge.api.ws
~~~~~~~~~~~~~~~~~~

WebSocket 实时会话接口。

提供 ``/ws/chat`` 端点。连接先完成握手认证，随后所有帧按
``{"event": ..., "data": ...}`` 信封收发。

接收与处理拆成两个协程、中间用有界队列隔离：
同一连接的事件严格按到达顺序逐条处理，处理慢时不会阻塞接收（队列满则丢弃并提示）。
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from learnbridge.core.config import settings
from learnbridge.core.errors import AuthenticationError
from learnbridge.core.logging import get_logger, request_id_ctx_var
from learnbridge.services.chat_system import ChatSystem
from learnbridge.services.connection import receive_frame

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 实时会话端点。

    握手：URL 查询参数 ``token``、``Authorization`` 头，或第一帧
    ``{"event": "auth", "data": {"token": "..."}}``。认证成功后服务端先推送
    ``connected``，此时连接已加入自己的个人房间。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    connection_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(connection_id)

    try:
        system: ChatSystem = websocket.app.state.chat_system
        try:
            connection = await system.connect(websocket, connection_id=connection_id)
        except AuthenticationError:
            return

        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)

        async def receive_loop() -> None:
            try:
                while True:
                    frame = await receive_frame(websocket)
                    if frame is None:
                        logger.warning("丢弃二进制帧 | user=%s", connection.user_id)
                        continue
                    try:
                        queue.put_nowait(frame)
                    except asyncio.QueueFull:
                        logger.warning("事件队列已满，丢弃帧 | user=%s", connection.user_id)
                        await system.relay.reject(connection, "Too many pending events")
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s", e, exc_info=True)
            finally:
                await queue.put(None)  # 通知处理协程结束

        async def process_loop() -> None:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                try:
                    await system.handle_frame(connection, frame)
                except Exception as e:
                    # 单个事件失败不影响连接上的后续事件
                    logger.error("事件处理异常: %s", e, exc_info=True)

        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            await system.disconnect(connection)

    finally:
        request_id_ctx_var.reset(token)
