"""
learnbridge.services.chat_system
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

实时会话系统 —— 组装 Connection Gate、注册表、Message Relay 与在线状态广播器，
并把客户端事件分派给对应的处理函数。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.chat_system``，不使用全局单例。
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket
from motor.motor_asyncio import AsyncIOMotorDatabase

from learnbridge.auth.resolver import JwtPrincipalResolver
from learnbridge.core.config import Settings
from learnbridge.core.errors import ChatError
from learnbridge.core.logging import get_logger
from learnbridge.db.directory import SessionRepository, UserRepository
from learnbridge.db.message_repository import MessageRepository
from learnbridge.schemas.events import (
    AuthEvent,
    ConnectedData,
    ConversationJoinedData,
    InvalidEventError,
    JoinConversationEvent,
    JoinSessionEvent,
    LeaveConversationEvent,
    LeaveSessionEvent,
    MarkAsReadEvent,
    PrivateMessageEvent,
    SessionJoinedData,
    SessionUpdateEvent,
    StopTypingEvent,
    TypingEvent,
    parse_client_event,
)
from learnbridge.services.connection import Connection
from learnbridge.services.gate import ConnectionGate
from learnbridge.services.presence import PresenceBroadcaster
from learnbridge.services.registry import ConnectionRegistry
from learnbridge.services.relay import MessageRelay
from learnbridge.services.rooms import conversation_room_id, session_room_id
from learnbridge.services.session_guard import SessionGuard

logger = get_logger(__name__)

_INVALID_MESSAGE_REASON = "Receiver and content are required"


class ChatSystem:
    """实时会话系统。

    - ``connect(websocket)``       → 握手、登记、上线广播
    - ``handle_frame(conn, text)`` → 解析并分派一条客户端帧
    - ``disconnect(conn)``         → 退出全部房间、下线广播

    Attributes:
        registry: 连接注册表（本实例独享）。
        gate: 握手认证器。
        relay: 私信发送与已读回执。
        presence: 在线状态与瞬时信号广播器。
        guard: 会话访问校验器。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        gate: ConnectionGate,
        relay: MessageRelay,
        presence: PresenceBroadcaster,
        guard: SessionGuard,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.relay = relay
        self.presence = presence
        self.guard = guard
        self._handlers: dict[type, Callable[[Connection, Any], Awaitable[None]]] = {
            AuthEvent: self._on_auth,
            JoinConversationEvent: self._on_join_conversation,
            LeaveConversationEvent: self._on_leave_conversation,
            JoinSessionEvent: self._on_join_session,
            LeaveSessionEvent: self._on_leave_session,
            PrivateMessageEvent: self._on_private_message,
            MarkAsReadEvent: self._on_mark_as_read,
            TypingEvent: self._on_typing,
            StopTypingEvent: self._on_stop_typing,
            SessionUpdateEvent: self._on_session_update,
        }

    @classmethod
    def from_database(cls, db: AsyncIOMotorDatabase, settings: Settings) -> ChatSystem:
        """基于 MongoDB 与配置组装完整的会话系统。"""
        registry = ConnectionRegistry()
        users = UserRepository(db)
        guard = SessionGuard(
            SessionRepository(db),
            enforce_room_access=settings.SESSION_JOIN_REQUIRES_PARTICIPANT,
        )
        resolver = JwtPrincipalResolver(users, settings.JWT_SECRET, settings.JWT_ALGORITHM)
        return cls(
            registry=registry,
            gate=ConnectionGate(resolver, timeout=settings.WS_AUTH_TIMEOUT),
            relay=MessageRelay(
                registry,
                MessageRepository(db),
                users,
                guard,
                max_length=settings.MESSAGE_MAX_LENGTH,
                message_interval=settings.WS_MESSAGE_INTERVAL,
            ),
            presence=PresenceBroadcaster(
                registry,
                guard,
                typing_debounce=settings.TYPING_DEBOUNCE_SECONDS,
                per_user=settings.PRESENCE_PER_USER,
            ),
            guard=guard,
        )

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket, connection_id: str | None = None) -> Connection:
        """完成握手并登记连接。

        Raises:
            AuthenticationError: 握手失败（连接已被关闭）。
        """
        connection = await self.gate.authenticate(websocket, connection_id=connection_id)
        await self.presence.on_connect(connection)
        await self.registry.emit(
            [connection],
            "connected",
            ConnectedData(
                user_id=connection.user_id,
                name=connection.principal.display_name,
                role=connection.principal.role,
                connection_id=connection.id,
            ),
        )
        return connection

    async def disconnect(self, connection: Connection) -> None:
        await self.presence.on_disconnect(connection)
        self.relay.forget(connection)

    # ── 事件分派 ──────────────────────────────────────────────────────

    async def handle_frame(self, connection: Connection, frame: str) -> None:
        """解析并处理一条客户端帧。非法帧只影响本条，不会断开连接。"""
        if not connection.is_open:
            logger.debug("连接已关闭，丢弃帧 | conn=%s", connection.id)
            return
        try:
            event = parse_client_event(frame)
        except InvalidEventError as e:
            if e.event == "privateMessage":
                logger.info("非法私信载荷 | from=%s | %s", connection.user_id, e.reason)
                await self.relay.reject(connection, _INVALID_MESSAGE_REASON)
            else:
                logger.warning("丢弃非法事件 | from=%s | %s", connection.user_id, e.reason)
            return

        await self._handlers[type(event)](connection, event)

    async def _on_auth(self, connection: Connection, event: AuthEvent) -> None:
        logger.debug("连接已认证，忽略重复的 auth 帧 | conn=%s", connection.id)

    async def _on_join_conversation(self, connection: Connection, event: JoinConversationEvent) -> None:
        await self.join_conversation(connection, event.data)

    async def _on_leave_conversation(self, connection: Connection, event: LeaveConversationEvent) -> None:
        self.leave_conversation(connection, event.data)

    async def _on_join_session(self, connection: Connection, event: JoinSessionEvent) -> None:
        await self.join_session(connection, event.data)

    async def _on_leave_session(self, connection: Connection, event: LeaveSessionEvent) -> None:
        self.leave_session(connection, event.data)

    async def _on_private_message(self, connection: Connection, event: PrivateMessageEvent) -> None:
        await self.relay.send_message(connection, event.data)

    async def _on_mark_as_read(self, connection: Connection, event: MarkAsReadEvent) -> None:
        await self.relay.mark_read(connection, event.data)

    async def _on_typing(self, connection: Connection, event: TypingEvent) -> None:
        await self.presence.typing(connection, event.data.receiver)

    async def _on_stop_typing(self, connection: Connection, event: StopTypingEvent) -> None:
        await self.presence.stop_typing(connection, event.data.receiver)

    async def _on_session_update(self, connection: Connection, event: SessionUpdateEvent) -> None:
        await self.presence.session_update(connection, event.data.session_id, event.data.status)

    # ── 房间操作 ──────────────────────────────────────────────────────

    async def join_conversation(self, connection: Connection, peer_id: str) -> str | None:
        """加入与 ``peer_id`` 的会话房间。房间的一方固定为当前连接自己。

        Returns:
            房间名；对自己发起时返回 None。
        """
        if peer_id == connection.user_id:
            logger.info("忽略与自己的会话房间 | user=%s", connection.user_id)
            return None

        room = conversation_room_id(connection.user_id, peer_id)
        ack = ConversationJoinedData(room=room, users=[connection.user_id, peer_id])
        if self.registry.join(connection, room):
            logger.info("%s 加入会话房间 %s", connection.principal.display_name, room)
            await self.registry.emit_to_room(room, "conversationJoined", ack)
        else:
            await self.registry.emit([connection], "conversationJoined", ack)
        return room

    def leave_conversation(self, connection: Connection, peer_id: str) -> str:
        room = conversation_room_id(connection.user_id, peer_id)
        if self.registry.leave(connection, room):
            logger.info("%s 离开会话房间 %s", connection.principal.display_name, room)
        return room

    async def join_session(self, connection: Connection, session_id: str) -> str | None:
        """加入辅导会话房间。

        Returns:
            房间名；校验未通过时返回 None。
        """
        try:
            await self.guard.check_room_access(connection.principal, session_id)
        except ChatError as e:
            logger.warning("拒绝加入会话房间 | user=%s | session=%s | %s", connection.user_id, session_id, e.reason)
            return None

        room = session_room_id(session_id)
        if self.registry.join(connection, room):
            logger.info("%s 加入会话房间 %s", connection.principal.display_name, room)
        await self.registry.emit(
            [connection], "sessionJoined", SessionJoinedData(room=room, session_id=session_id),
        )
        return room

    def leave_session(self, connection: Connection, session_id: str) -> str:
        room = session_room_id(session_id)
        if self.registry.leave(connection, room):
            logger.info("%s 离开会话房间 %s", connection.principal.display_name, room)
        return room
