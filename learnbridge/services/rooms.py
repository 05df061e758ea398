"""
learnbridge.services.rooms
~~~~~~~~~~~~~~~~~~~~~~~~~~

房间命名规则。

- 会话房间：``conversation:{较小ID}_{较大ID}``，按字符串排序，
  无论哪一方先加入都会落到同一个房间。
- 辅导会话房间：``session:{sessionId}``。
- 个人房间：直接使用用户 ID，连接建立时自动加入。

命名函数本身不是访问控制：调用方必须把当前连接自己的 ID 作为其中一方传入。
"""
from __future__ import annotations

CONVERSATION_PREFIX = "conversation:"
SESSION_PREFIX = "session:"


def conversation_room_id(user_a: object, user_b: object) -> str:
    low, high = sorted([str(user_a), str(user_b)])
    return f"{CONVERSATION_PREFIX}{low}_{high}"


def session_room_id(session_id: object) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def personal_room_id(user_id: object) -> str:
    return str(user_id)
