"""
learnbridge.db.directory
~~~~~~~~~~~~~~~~~~~~~~~~

只读查询：用户与辅导会话。

两个集合都由 REST 层维护，实时层只读取身份校验与会话参与者校验所需的字段。
"""
from __future__ import annotations

from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from learnbridge.core.errors import PersistenceError
from learnbridge.db import to_object_id


class UserRecord(TypedDict):
    id: str
    name: str
    role: str


class UserRepository:
    """``users`` 集合的只读访问。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db["users"]

    async def find_active_by_id(self, user_id: str) -> UserRecord | None:
        """查找未被停用的用户。``isActive == False`` 视为已删除。

        Raises:
            ValidationError: ID 格式不合法。
            PersistenceError: 数据库读取失败。
        """
        try:
            doc = await self._collection.find_one(
                {"_id": to_object_id(user_id, "user id"), "isActive": {"$ne": False}},
                {"name": 1, "role": 1},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load user: {e}") from e
        if doc is None:
            return None
        return UserRecord(id=str(doc["_id"]), name=doc.get("name", ""), role=doc.get("role", "student"))


class SessionRepository:
    """``sessions`` 集合的只读访问。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db["sessions"]

    async def get_participants(self, session_id: str) -> tuple[str, str] | None:
        """返回会话的 ``(student, tutor)``；会话不存在时返回 None。

        Raises:
            ValidationError: ID 格式不合法。
            PersistenceError: 数据库读取失败。
        """
        try:
            doc = await self._collection.find_one(
                {"_id": to_object_id(session_id, "session id")},
                {"student": 1, "tutor": 1},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load session: {e}") from e
        if doc is None:
            return None
        return str(doc["student"]), str(doc["tutor"])
