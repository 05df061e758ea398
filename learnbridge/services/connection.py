"""
learnbridge.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

单条 WebSocket 连接 —— 绑定一个 Principal，记录自身加入的房间。
"""
from __future__ import annotations

import uuid
from enum import Enum

from fastapi import WebSocket, WebSocketDisconnect

from learnbridge.auth.resolver import Principal


async def receive_frame(websocket: WebSocket) -> str | None:
    """读取下一条客户端帧。

    Returns:
        文本帧内容；二进制帧返回 None（协议只使用 JSON 文本帧）。

    Raises:
        WebSocketDisconnect: 客户端已断开。
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
    return message.get("text")


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Connection:
    """一条已通过握手的实时连接。

    连接只能在 ``AUTHENTICATED`` 状态下收发事件；一旦进入 ``CLOSED``
    不可恢复，客户端重连后会得到一个新的 ``Connection``，房间需重新加入。

    Attributes:
        websocket: 底层 FastAPI WebSocket。
        principal: 握手时解析出的身份，生命周期内不可变。
        id: 连接关联 ID，用于日志。
        rooms: 当前加入的房间名集合（由 ``ConnectionRegistry`` 维护）。
        state: 生命周期状态。
    """

    def __init__(
        self,
        websocket: WebSocket,
        principal: Principal,
        connection_id: str | None = None,
    ) -> None:
        self.websocket = websocket
        self.principal = principal
        self.id = connection_id or f"ws-{uuid.uuid4().hex[:8]}"
        self.rooms: set[str] = set()
        self.state = ConnectionState.AUTHENTICATED

    @property
    def user_id(self) -> str:
        return self.principal.id

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED

    async def send_text(self, frame: str) -> None:
        await self.websocket.send_text(frame)

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id} state={self.state.value}>"
