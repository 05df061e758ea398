"""
learnbridge.services.relay
~~~~~~~~~~~~~~~~~~~~~~~~~~

Message Relay —— 私信的「先持久化、后广播」发送链路，以及批量已读回执。

发送流程:
  1. 校验载荷（接收者 / 内容 / 长度 / 发送频率）
  2. 校验接收者存在、会话消息的双方身份
  3. 写入 Message Store 并回读补全参与者信息
  4. 扇出：
     - ``newMessage``    → 会话房间 ∪ 接收者个人房间 ∪ 发送者个人房间（按连接去重，排除发起连接）
     - ``sessionMessage`` → session 房间（仅当消息带 ``session``）
     - ``messageSent``   → 仅发起连接

持久化失败是单次发送唯一的致命条件：只回 ``messageError`` 给发送者，不做任何广播，也不重试。
"""
from __future__ import annotations

from learnbridge.core.errors import ChatError, PersistenceError, ValidationError
from learnbridge.core.logging import get_logger
from learnbridge.core.rate_limit import IntervalRateLimiter
from learnbridge.db.directory import UserRepository
from learnbridge.db.message_repository import MessageRepository
from learnbridge.schemas.events import (
    MarkAsReadPayload,
    MessageData,
    MessageErrorData,
    MessagesReadData,
    PrivateMessagePayload,
)
from learnbridge.services.connection import Connection
from learnbridge.services.registry import ConnectionRegistry
from learnbridge.services.rooms import conversation_room_id, personal_room_id, session_room_id
from learnbridge.services.session_guard import SessionGuard

logger = get_logger(__name__)


class MessageRelay:
    """私信发送与已读回执。

    Attributes:
        registry: 连接注册表。
        messages: Message Store 协作者。
        users: 用户只读仓库（校验接收者）。
        guard: 会话参与者校验器。
        max_length: 单条消息最大字符数。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        messages: MessageRepository,
        users: UserRepository,
        guard: SessionGuard,
        max_length: int = 2000,
        message_interval: float = 0.0,
    ) -> None:
        self.registry = registry
        self.messages = messages
        self.users = users
        self.guard = guard
        self.max_length = max_length
        self._flood_guard = IntervalRateLimiter(interval_seconds=message_interval)

    # ── 发送 ──────────────────────────────────────────────────────────

    async def send_message(
        self, connection: Connection, payload: PrivateMessagePayload,
    ) -> MessageData | None:
        """发送一条私信。

        Returns:
            持久化后的消息；失败时返回 None（错误已通过 ``messageError`` 告知发送者）。
        """
        try:
            message = await self._persist(connection, payload)
        except ChatError as e:
            if isinstance(e, PersistenceError):
                logger.error("私信持久化失败 | from=%s | %s", connection.user_id, e.reason)
            else:
                logger.info("私信被拒绝 | from=%s | %s", connection.user_id, e.reason)
            await self.reject(connection, e.reason)
            return None

        await self._fan_out(connection, message)
        return message

    async def reject(self, connection: Connection, reason: str) -> None:
        """仅向发送者回报一次发送失败。"""
        await self.registry.emit([connection], "messageError", MessageErrorData(error=reason))

    async def _persist(self, connection: Connection, payload: PrivateMessagePayload) -> MessageData:
        sender_id = connection.user_id
        receiver_id = payload.receiver

        if receiver_id == sender_id:
            raise ValidationError("Cannot send a message to yourself")
        if len(payload.content) > self.max_length:
            raise ValidationError(f"Message content exceeds {self.max_length} characters")
        if not self._flood_guard.is_allowed(connection.id):
            raise ValidationError("You are sending messages too fast")

        if await self.users.find_active_by_id(receiver_id) is None:
            raise ValidationError("Receiver not found")
        if payload.session:
            await self.guard.check_message_parties(sender_id, receiver_id, payload.session)

        message_id = await self.messages.create(
            sender_id, receiver_id, payload.content, payload.session,
        )
        record = await self.messages.find_by_id(message_id)
        if record is None:
            raise PersistenceError("Message could not be read back after saving")
        return MessageData.model_validate(record)

    async def _fan_out(self, origin: Connection, message: MessageData) -> None:
        sender_id = message.sender.id
        receiver_id = message.receiver.id
        conversation = conversation_room_id(sender_id, receiver_id)

        # 同一连接可能同时在会话房间和个人房间里，合并后每个连接只收一次
        targets = (
            self.registry.connections_in(conversation)
            | self.registry.connections_in(personal_room_id(receiver_id))
            | self.registry.connections_in(personal_room_id(sender_id))
        )
        targets.discard(origin)
        delivered = await self.registry.emit(targets, "newMessage", message)

        if message.session:
            await self.registry.emit_to_room(
                session_room_id(message.session), "sessionMessage", message,
            )

        await self.registry.emit([origin], "messageSent", message)
        logger.info(
            "私信已发送 | id=%s | %s -> %s | room=%s | 送达连接 %d | %s",
            message.id, sender_id, receiver_id, conversation, delivered, message.content[:20],
        )

    # ── 已读回执 ──────────────────────────────────────────────────────

    async def mark_read(self, connection: Connection, payload: MarkAsReadPayload) -> int:
        """把 ``sender → 当前用户`` 方向的未读消息全部标记为已读，并通知原发送者。

        写入失败只记录日志、不通知任何人（已读回执是尽力而为的信号）。

        Returns:
            被标记为已读的条数。
        """
        reader_id = connection.user_id
        sender_id = payload.sender

        try:
            count = await self.messages.update_many_read_status(sender_id, reader_id)
        except ChatError as e:
            logger.warning("已读回执写入失败 | reader=%s | sender=%s | %s", reader_id, sender_id, e.reason)
            return 0

        # 只有对方关心回执，读者自己的其他连接不通知
        targets = (
            self.registry.connections_in(conversation_room_id(reader_id, sender_id))
            | self.registry.connections_in(personal_room_id(sender_id))
        ) - self.registry.connections_of(reader_id)
        await self.registry.emit(
            targets, "messagesRead", MessagesReadData(by=reader_id, for_=sender_id, count=count),
        )
        logger.info("已读回执 | %s 已读 %s 的 %d 条消息", reader_id, sender_id, count)
        return count

    def forget(self, connection: Connection) -> None:
        """连接断开后清理限流记录。"""
        self._flood_guard.reset(connection.id)
