"""
learnbridge.db.message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

私信持久化仓库 —— 封装 MongoDB ``messages`` 集合的增查改操作。

消息是本子系统唯一的持久实体，也是广播层的事实来源：
Message Relay 必须先写入成功、再回读补全后才能广播。

文档结构与 REST 层共用::

    {_id, sender, receiver, content, session, isRead, createdAt, updatedAt}

其中 ``sender`` / ``receiver`` / ``session`` 为 ``ObjectId`` 引用。
对外一律使用字符串 ID。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from learnbridge.core.errors import PersistenceError
from learnbridge.core.logging import get_logger
from learnbridge.db import to_object_id

logger = get_logger(__name__)

_COLLECTION_NAME = "messages"
_USERS_COLLECTION = "users"


class ParticipantRecord(TypedDict):
    """消息参与者的展示信息。"""
    id: str
    name: str | None
    role: str | None


class MessageRecord(TypedDict):
    """补全了参与者信息的单条消息。"""
    id: str
    sender: ParticipantRecord
    receiver: ParticipantRecord
    content: str
    session: str | None
    is_read: bool
    created_at: datetime


def _participant(ref: Any, joined: list[dict]) -> ParticipantRecord:
    """把 ``$lookup`` 的结果数组折叠为单个参与者记录。"""
    user = joined[0] if joined else {}
    return ParticipantRecord(
        id=str(ref),
        name=user.get("name"),
        role=user.get("role"),
    )


class MessageRepository:
    """私信持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 已读回执按 (发送者, 接收者, 未读) 批量更新
        await self._collection.create_index(
            [("sender", 1), ("receiver", 1), ("isRead", 1)],
            name="idx_pair_unread",
        )
        await self._collection.create_index(
            [("session", 1), ("createdAt", 1)],
            name="idx_session_time",
        )
        self._indexes_created = True
        logger.debug("messages 索引已就绪")

    async def create(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        session_id: str | None = None,
    ) -> str:
        """写入一条新消息，``isRead`` 恒为 False。

        Args:
            sender_id: 发送者用户 ID。
            receiver_id: 接收者用户 ID。
            content: 消息文本。
            session_id: 可选的辅导会话 ID。

        Returns:
            新消息的字符串 ID。

        Raises:
            ValidationError: ID 格式不合法。
            PersistenceError: 数据库写入失败。
        """
        now = datetime.now(timezone.utc)
        doc = {
            "sender": to_object_id(sender_id, "sender"),
            "receiver": to_object_id(receiver_id, "receiver"),
            "content": content,
            "session": to_object_id(session_id, "session") if session_id else None,
            "isRead": False,
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            await self._ensure_indexes()
            result = await self._collection.insert_one(doc)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to save message: {e}") from e
        return str(result.inserted_id)

    async def find_by_id(self, message_id: str) -> MessageRecord | None:
        """按 ID 回读消息，并联表补全发送者 / 接收者的 ``name`` 与 ``role``。

        Returns:
            补全后的消息；不存在时返回 None。

        Raises:
            PersistenceError: 数据库读取失败。
        """
        pipeline = [
            {"$match": {"_id": to_object_id(message_id, "message id")}},
            {"$limit": 1},
            {
                "$lookup": {
                    "from": _USERS_COLLECTION,
                    "localField": "sender",
                    "foreignField": "_id",
                    "as": "senderUser",
                },
            },
            {
                "$lookup": {
                    "from": _USERS_COLLECTION,
                    "localField": "receiver",
                    "foreignField": "_id",
                    "as": "receiverUser",
                },
            },
        ]
        try:
            docs = await self._collection.aggregate(pipeline).to_list(length=1)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load message: {e}") from e
        if not docs:
            return None

        doc = docs[0]
        session = doc.get("session")
        return MessageRecord(
            id=str(doc["_id"]),
            sender=_participant(doc["sender"], doc.get("senderUser", [])),
            receiver=_participant(doc["receiver"], doc.get("receiverUser", [])),
            content=doc["content"],
            session=str(session) if session is not None else None,
            is_read=bool(doc.get("isRead", False)),
            created_at=doc["createdAt"],
        )

    async def update_many_read_status(self, sender_id: str, receiver_id: str) -> int:
        """把 ``sender → receiver`` 方向的所有未读消息批量标记为已读。

        反方向（``receiver → sender``）的消息不受影响。

        Returns:
            实际被修改的消息条数。

        Raises:
            PersistenceError: 数据库写入失败。
        """
        query = {
            "sender": to_object_id(sender_id, "sender"),
            "receiver": to_object_id(receiver_id, "receiver"),
            "isRead": False,
        }
        try:
            await self._ensure_indexes()
            result = await self._collection.update_many(
                query,
                {"$set": {"isRead": True, "updatedAt": datetime.now(timezone.utc)}},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to mark messages as read: {e}") from e
        return result.modified_count
