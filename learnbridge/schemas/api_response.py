"""
learnbridge.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 侧的应答模型。实时会话走 WebSocket，HTTP 只剩健康检查与全局异常两处出口，
二者都用 ``ApiResponse`` 包一层，和 REST 层的返回格式保持一致。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """``{"code": 200, "data": {...}, "msg": "success"}``"""

    code: int = Field(default=200, description="业务状态码，200 表示成功")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)


class HealthData(BaseModel):
    """``/health`` 返回的运行状况快照。"""

    status: str = "ok"
    environment: str
    debug: bool
    connections: int = Field(default=0, description="当前在线连接数")
    online_users: int = Field(default=0, description="当前在线用户数（多标签页只算一次）")
    rooms: int = Field(default=0, description="当前非空房间数")
