"""
learnbridge.core.errors
~~~~~~~~~~~~~~~~~~~~~~~

实时会话层的异常分类。

除 ``AuthenticationError`` 会关闭连接外，其余异常只终止触发它的单次操作，
由调用方转成 ``messageError`` 事件回给发送者（或仅记录日志）。
"""
from __future__ import annotations


class ChatError(Exception):
    """会话层异常基类。``reason`` 为可直接返回给客户端的描述。"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AuthenticationError(ChatError):
    """握手阶段凭证缺失、无效或用户不存在。对连接是致命的。"""


class ValidationError(ChatError):
    """事件载荷不合法（缺少接收者 / 内容为空 / ID 格式错误等）。"""


class AuthorizationError(ChatError):
    """试图访问自己不是参与者的会话或房间。"""


class PersistenceError(ChatError):
    """Message Store 不可用或拒绝写入。"""
