"""
learnbridge.services.gate
~~~~~~~~~~~~~~~~~~~~~~~~~

Connection Gate —— 每条连接的握手认证。

凭证来源（按优先级）:
  1. URL 查询参数 ``?token=...``
  2. ``Authorization`` 请求头
  3. 连接建立后的第一帧 ``{"event": "auth", "data": {"token": "..."}}``，
     必须在 ``WS_AUTH_TIMEOUT`` 秒内到达

认证失败时以 4401 关闭连接（超时为 4408），原因字符串直接返回给客户端，
之后不再处理该连接上的任何事件。
"""
from __future__ import annotations

import asyncio

from fastapi import WebSocket, WebSocketDisconnect

from learnbridge.auth.resolver import PrincipalResolver
from learnbridge.core.errors import AuthenticationError
from learnbridge.core.logging import get_logger
from learnbridge.schemas.events import AuthEvent, InvalidEventError, parse_client_event
from learnbridge.services.connection import Connection, receive_frame

logger = get_logger(__name__)

CLOSE_AUTH_FAILED = 4401
CLOSE_AUTH_TIMEOUT = 4408


class ConnectionGate:
    """握手认证器。

    Attributes:
        resolver: Principal 解析器（外部认证协作者）。
        timeout: 等待认证帧的最长秒数。
    """

    def __init__(self, resolver: PrincipalResolver, timeout: float = 10.0) -> None:
        self.resolver = resolver
        self.timeout = timeout

    async def authenticate(self, websocket: WebSocket, connection_id: str | None = None) -> Connection:
        """接受连接并完成握手。

        Returns:
            已绑定 Principal 的 ``Connection``。

        Raises:
            AuthenticationError: 握手失败，连接已被关闭。
        """
        await websocket.accept()

        try:
            token = self._token_from_handshake(websocket)
            if token is None:
                token = await asyncio.wait_for(
                    self._receive_auth_frame(websocket), timeout=self.timeout,
                )
            principal = await self.resolver.resolve(token)
        except asyncio.TimeoutError:
            reason = "Authentication error: Handshake timed out"
            logger.info("握手超时 | timeout=%.1fs", self.timeout)
            await self._close(websocket, CLOSE_AUTH_TIMEOUT, reason)
            raise AuthenticationError(reason) from None
        except WebSocketDisconnect:
            logger.info("握手阶段客户端断开")
            raise AuthenticationError("Authentication error: Connection closed during handshake") from None
        except AuthenticationError as e:
            logger.info("握手失败: %s", e.reason)
            await self._close(websocket, CLOSE_AUTH_FAILED, e.reason)
            raise

        connection = Connection(websocket, principal, connection_id=connection_id)
        logger.info(
            "连接已认证 | user=%s (%s) | role=%s | conn=%s",
            principal.display_name, principal.id, principal.role, connection.id,
        )
        return connection

    @staticmethod
    def _token_from_handshake(websocket: WebSocket) -> str | None:
        token = websocket.query_params.get("token")
        if token:
            return token
        return websocket.headers.get("authorization") or None

    @staticmethod
    async def _receive_auth_frame(websocket: WebSocket) -> str:
        frame = await receive_frame(websocket)
        if frame is None:
            raise AuthenticationError("Authentication error: Token not provided")
        try:
            event = parse_client_event(frame)
        except InvalidEventError as e:
            raise AuthenticationError("Authentication error: Token not provided") from e
        if not isinstance(event, AuthEvent):
            raise AuthenticationError("Authentication error: Token not provided")
        return event.data.token

    @staticmethod
    async def _close(websocket: WebSocket, code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError:
            # 客户端已先行断开
            logger.debug("关闭连接时 socket 已断开")
