"""
learnbridge.services.session_guard
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

辅导会话的参与者校验。

- 带 ``session`` 字段的私信：始终校验发送者与接收者恰好是该会话的学生和导师。
- 加入 session 房间 / 广播会话状态：默认不校验（沿用现有客户端行为），
  ``SESSION_JOIN_REQUIRES_PARTICIPANT`` 开启后要求是参与者或管理员。
"""
from __future__ import annotations

from learnbridge.auth.resolver import Principal
from learnbridge.core.errors import AuthorizationError
from learnbridge.db.directory import SessionRepository


class SessionGuard:
    """会话访问校验器。

    Attributes:
        sessions: 会话只读仓库。
        enforce_room_access: 是否对房间加入 / 状态广播做参与者校验。
    """

    def __init__(self, sessions: SessionRepository, enforce_room_access: bool = False) -> None:
        self.sessions = sessions
        self.enforce_room_access = enforce_room_access

    async def _participants(self, session_id: str) -> tuple[str, str]:
        participants = await self.sessions.get_participants(session_id)
        if participants is None:
            raise AuthorizationError("Session not found")
        return participants

    async def check_message_parties(self, sender_id: str, receiver_id: str, session_id: str) -> None:
        """确认一条会话消息的双方就是该会话的两位参与者。

        Raises:
            AuthorizationError: 会话不存在或双方不是该会话的参与者。
        """
        student, tutor = await self._participants(session_id)
        if {sender_id, receiver_id} != {student, tutor}:
            raise AuthorizationError("Not authorized to send messages in this session")

    async def check_room_access(self, principal: Principal, session_id: str) -> None:
        """按配置校验 principal 能否进入会话房间或广播会话状态。"""
        if not self.enforce_room_access or principal.is_admin:
            return
        if principal.id not in await self._participants(session_id):
            raise AuthorizationError("Not authorized to access this session")
