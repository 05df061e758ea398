"""
learnbridge.auth.resolver
~~~~~~~~~~~~~~~~~~~~~~~~~

Principal Resolver —— 把握手时携带的 Bearer 凭证解析为已认证身份。

凭证签发由 REST 层负责，这里只做校验：解码 JWT、取出用户 ID、
确认用户存在且未被停用。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import jwt

from learnbridge.core.errors import AuthenticationError, ChatError
from learnbridge.core.logging import get_logger
from learnbridge.db.directory import UserRepository

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True, slots=True)
class Principal:
    """绑定在连接上的已认证身份，连接生命周期内不可变。"""

    id: str
    display_name: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class PrincipalResolver(Protocol):
    async def resolve(self, token: str | None) -> Principal:
        """解析凭证，失败时抛出 ``AuthenticationError``。"""
        ...


class JwtPrincipalResolver:
    """基于 JWT 的 Principal 解析器。

    Attributes:
        users: 用户只读仓库。
        secret: JWT 签名密钥。
        algorithm: JWT 签名算法。
    """

    def __init__(self, users: UserRepository, secret: str, algorithm: str = "HS256") -> None:
        self.users = users
        self.secret = secret
        self.algorithm = algorithm

    async def resolve(self, token: str | None) -> Principal:
        if not token:
            raise AuthenticationError("Authentication error: Token not provided")
        if token.startswith(_BEARER_PREFIX):
            token = token[len(_BEARER_PREFIX):]

        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.info("JWT 校验失败: %s", e)
            raise AuthenticationError("Authentication error: Invalid token") from e

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError("Authentication error: Invalid token")

        try:
            user = await self.users.find_active_by_id(str(user_id))
        except ChatError as e:
            # ID 格式错误或数据库不可用，一律按认证失败处理
            logger.warning("认证时查询用户失败: %s", e.reason)
            raise AuthenticationError("Authentication error: Invalid token") from e

        if user is None:
            raise AuthenticationError("Authentication error: User not found")
        return Principal(id=user["id"], display_name=user["name"], role=user["role"])
