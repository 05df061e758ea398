"""
learnbridge.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件协议模型。

所有帧均为 JSON 信封 ``{"event": "<名称>", "data": <载荷>}``，双向一致。

- 客户端 → 服务端：以 ``event`` 字段为判别键的 Pydantic 联合类型，
  缺少必填字段会在构造阶段直接报错，而不是在各个处理函数里零散判断。
- 服务端 → 客户端：载荷模型序列化时使用 camelCase 键（``userId``、``isRead`` 等），
  与前端约定保持一致。
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from learnbridge.core.errors import ValidationError

Role = Literal["student", "tutor", "admin"]
SessionStatus = Literal["pending", "accepted", "rejected", "completed", "cancelled"]

ServerEventName = Literal[
    "connected",
    "newMessage",
    "sessionMessage",
    "messageSent",
    "messageError",
    "messagesRead",
    "userOnline",
    "userOffline",
    "userTyping",
    "userStoppedTyping",
    "sessionStatusChanged",
    "conversationJoined",
    "sessionJoined",
]

NonEmptyId = Annotated[str, Field(min_length=1)]


# ── 客户端 → 服务端 ───────────────────────────────────────────────────

class AuthPayload(BaseModel):
    """握手帧载荷。"""

    token: str = Field(..., min_length=1, description="Bearer 凭证")


class PrivateMessagePayload(BaseModel):
    """私信载荷。``session`` 可选，携带时消息同时归属该辅导会话。"""

    receiver: NonEmptyId = Field(..., description="接收者用户 ID")
    content: str = Field(..., description="消息文本")
    session: str | None = Field(default=None, description="关联的辅导会话 ID")

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value

    @field_validator("session")
    @classmethod
    def _empty_session_is_none(cls, value: str | None) -> str | None:
        return value or None


class MarkAsReadPayload(BaseModel):
    sender: NonEmptyId


class TypingPayload(BaseModel):
    receiver: NonEmptyId


class SessionUpdatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: NonEmptyId = Field(..., alias="sessionId")
    status: SessionStatus


class AuthEvent(BaseModel):
    event: Literal["auth"]
    data: AuthPayload


class JoinConversationEvent(BaseModel):
    event: Literal["joinConversation"]
    data: NonEmptyId


class LeaveConversationEvent(BaseModel):
    event: Literal["leaveConversation"]
    data: NonEmptyId


class JoinSessionEvent(BaseModel):
    event: Literal["joinSession"]
    data: NonEmptyId


class LeaveSessionEvent(BaseModel):
    event: Literal["leaveSession"]
    data: NonEmptyId


class PrivateMessageEvent(BaseModel):
    event: Literal["privateMessage"]
    data: PrivateMessagePayload


class MarkAsReadEvent(BaseModel):
    event: Literal["markAsRead"]
    data: MarkAsReadPayload


class TypingEvent(BaseModel):
    event: Literal["typing"]
    data: TypingPayload


class StopTypingEvent(BaseModel):
    event: Literal["stopTyping"]
    data: TypingPayload


class SessionUpdateEvent(BaseModel):
    event: Literal["sessionUpdate"]
    data: SessionUpdatePayload


ClientEvent = Annotated[
    Union[
        AuthEvent,
        JoinConversationEvent,
        LeaveConversationEvent,
        JoinSessionEvent,
        LeaveSessionEvent,
        PrivateMessageEvent,
        MarkAsReadEvent,
        TypingEvent,
        StopTypingEvent,
        SessionUpdateEvent,
    ],
    Field(discriminator="event"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


class InvalidEventError(ValidationError):
    """客户端帧无法解析。``event`` 为帧中声明的事件名（可能为 None）。"""

    def __init__(self, reason: str, event: str | None = None) -> None:
        super().__init__(reason)
        self.event = event


def parse_client_event(frame: str) -> ClientEvent:
    """把一条文本帧解析为强类型的客户端事件。

    Raises:
        InvalidEventError: JSON 非法、事件名未知或载荷缺少必填字段。
    """
    try:
        raw: Any = json.loads(frame)
    except json.JSONDecodeError as e:
        raise InvalidEventError("Malformed frame: not valid JSON") from e

    event_name = raw.get("event") if isinstance(raw, dict) else None
    try:
        return _client_event_adapter.validate_python(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidEventError(
            f"Invalid '{event_name}' event: {location} {first['msg']}",
            event=event_name if isinstance(event_name, str) else None,
        ) from e


# ── 服务端 → 客户端 ───────────────────────────────────────────────────

class OutboundPayload(BaseModel):
    """服务端事件载荷基类，序列化为 camelCase。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserSummary(OutboundPayload):
    """消息中附带的参与者展示信息。"""

    id: str
    name: str | None = None
    role: str | None = None


class MessageData(OutboundPayload):
    """已持久化并补全参与者信息的消息。

    ``id`` 与 ``created_at`` 始终来自存储层，客户端据此对账乐观回显。
    """

    id: str
    sender: UserSummary
    receiver: UserSummary
    content: str
    session: str | None = None
    is_read: bool = False
    created_at: datetime


class ConnectedData(OutboundPayload):
    """握手成功、已加入个人房间后发给本连接的确认。"""

    user_id: str
    name: str
    role: str
    connection_id: str


class MessageErrorData(OutboundPayload):
    error: str


class MessagesReadData(OutboundPayload):
    by: str = Field(..., description="执行已读的用户")
    for_: str = Field(..., alias="for", description="消息的原发送者")
    count: int = Field(default=0, description="本次被标记为已读的条数")


class PresenceData(OutboundPayload):
    user_id: str


class TypingData(OutboundPayload):
    user: str
    name: str | None = None


class SessionStatusChangedData(OutboundPayload):
    session_id: str
    status: SessionStatus
    updated_by: str


class ConversationJoinedData(OutboundPayload):
    room: str
    users: list[str]


class SessionJoinedData(OutboundPayload):
    room: str
    session_id: str


def encode_event(event: ServerEventName, payload: OutboundPayload) -> str:
    """把服务端事件编码为 JSON 文本帧。"""
    return json.dumps(
        {"event": event, "data": payload.model_dump(mode="json", by_alias=True)},
        ensure_ascii=False,
    )
