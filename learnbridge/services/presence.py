"""
learnbridge.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态与瞬时信号广播 —— 上下线、正在输入、会话状态变更。

这些事件都不落库、不保证送达。

上下线默认按连接广播：每条连接建立时向其他所有连接广播 ``userOnline``，
每条连接断开时向剩余连接广播 ``userOffline``。开启 ``per_user``
（``PRESENCE_PER_USER``）后按用户合并：同一用户开多个标签页时，
只有第一条连接上线、最后一条连接断开时才广播。
"""
from __future__ import annotations

from learnbridge.core.errors import ChatError
from learnbridge.core.logging import get_logger
from learnbridge.core.rate_limit import IntervalRateLimiter
from learnbridge.schemas.events import (
    PresenceData,
    ServerEventName,
    SessionStatus,
    SessionStatusChangedData,
    TypingData,
)
from learnbridge.services.connection import Connection
from learnbridge.services.registry import ConnectionRegistry
from learnbridge.services.rooms import conversation_room_id, session_room_id
from learnbridge.services.session_guard import SessionGuard

logger = get_logger(__name__)


class PresenceBroadcaster:
    """在线状态与瞬时信号广播器。

    Attributes:
        registry: 连接注册表。
        guard: 会话访问校验器（仅在开启房间校验时生效）。
        per_user: 上下线是否按用户合并。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        guard: SessionGuard,
        typing_debounce: float = 1.0,
        per_user: bool = False,
    ) -> None:
        self.registry = registry
        self.guard = guard
        self.per_user = per_user
        self._typing_limiter = IntervalRateLimiter(interval_seconds=typing_debounce)

    async def on_connect(self, connection: Connection) -> None:
        """登记连接（自动加入个人房间），并广播 ``userOnline``。"""
        first = self.registry.register(connection)
        logger.info(
            "用户上线 | user=%s | conn=%s | 在线连接: %d",
            connection.user_id, connection.id, self.registry.connection_count,
        )
        if self.per_user:
            if not first:
                return
            others = self.registry.all_connections() - self.registry.connections_of(connection.user_id)
        else:
            others = self.registry.all_connections() - {connection}
        await self.registry.emit(others, "userOnline", PresenceData(user_id=connection.user_id))

    async def on_disconnect(self, connection: Connection) -> None:
        """退出全部房间，并广播 ``userOffline``。重复调用不会重复广播。"""
        registered = connection in self.registry.connections_of(connection.user_id)
        last = self.registry.remove(connection)
        self._typing_limiter.remove_prefix(connection.id)
        if not registered:
            return
        logger.info(
            "用户下线 | user=%s | conn=%s | 在线连接: %d",
            connection.user_id, connection.id, self.registry.connection_count,
        )
        if last or not self.per_user:
            await self.registry.emit(
                self.registry.all_connections(), "userOffline", PresenceData(user_id=connection.user_id),
            )

    async def typing(self, connection: Connection, receiver_id: str) -> None:
        if not self._typing_limiter.is_allowed((connection.id, receiver_id)):
            return
        await self._relay_typing(connection, receiver_id, "userTyping")

    async def stop_typing(self, connection: Connection, receiver_id: str) -> None:
        self._typing_limiter.reset((connection.id, receiver_id))
        await self._relay_typing(connection, receiver_id, "userStoppedTyping")

    async def _relay_typing(self, connection: Connection, receiver_id: str, event: ServerEventName) -> None:
        await self.registry.emit_to_room(
            conversation_room_id(connection.user_id, receiver_id),
            event,
            TypingData(user=connection.user_id, name=connection.principal.display_name),
            exclude=self.registry.connections_of(connection.user_id),
        )

    async def session_update(
        self, connection: Connection, session_id: str, status: SessionStatus,
    ) -> None:
        """通知 session 房间会话状态已变更。

        真正的状态修改已由 REST 层完成，这里只做转发，不修改任何会话数据。
        """
        try:
            await self.guard.check_room_access(connection.principal, session_id)
        except ChatError as e:
            logger.warning("拒绝会话状态广播 | user=%s | session=%s | %s", connection.user_id, session_id, e.reason)
            return

        await self.registry.emit_to_room(
            session_room_id(session_id),
            "sessionStatusChanged",
            SessionStatusChangedData(session_id=session_id, status=status, updated_by=connection.user_id),
        )
        logger.info("会话状态广播 | session=%s | status=%s | by=%s", session_id, status, connection.user_id)
