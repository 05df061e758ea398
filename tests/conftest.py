"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB 与 JWT 校验，
使会话层测试可在无数据库环境下快速运行。
"""
from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from learnbridge.auth.resolver import Principal  # noqa: E402
from learnbridge.core.errors import AuthenticationError, PersistenceError  # noqa: E402
from learnbridge.services.chat_system import ChatSystem  # noqa: E402
from learnbridge.services.connection import Connection  # noqa: E402
from learnbridge.services.gate import ConnectionGate  # noqa: E402
from learnbridge.services.presence import PresenceBroadcaster  # noqa: E402
from learnbridge.services.registry import ConnectionRegistry  # noqa: E402
from learnbridge.services.relay import MessageRelay  # noqa: E402
from learnbridge.services.session_guard import SessionGuard  # noqa: E402

ALICE = Principal(id="u-alice", display_name="Alice", role="student")
BOB = Principal(id="u-bob", display_name="Bob", role="tutor")
CAROL = Principal(id="u-carol", display_name="Carol", role="student")
ADMIN = Principal(id="u-admin", display_name="Admin", role="admin")

PRINCIPALS: dict[str, Principal] = {p.id: p for p in (ALICE, BOB, CAROL, ADMIN)}
TOKENS: dict[str, Principal] = {f"token-{p.id}": p for p in PRINCIPALS.values()}

SESSION_ID = "s-alice-bob"


# ── WebSocket 替身 ────────────────────────────────────────────────────

class FakeWebSocket:
    """记录所有下行帧的 WebSocket 替身。"""

    def __init__(
        self,
        query_params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.query_params = query_params or {}
        self.headers = headers or {}
        self.sent: list[str] = []
        self.accepted = False
        self.closed: tuple[int, str] | None = None
        self.fail_sends = False
        self.on_send: Any = None
        self._inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason or "")

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        if self.on_send is not None:
            await self.on_send(data)
        self.sent.append(data)

    async def receive(self) -> dict[str, Any]:
        return await self._inbox.get()

    def push(self, event: str, data: Any) -> None:
        self.push_text(json.dumps({"event": event, "data": data}))

    def push_text(self, text: str) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes) -> None:
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_disconnect(self, code: int = 1000) -> None:
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        frames = [json.loads(frame) for frame in self.sent]
        return [f for f in frames if name is None or f["event"] == name]

    def payloads(self, name: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.events(name)]


# ── 协作者替身 ────────────────────────────────────────────────────────

class StaticResolver:
    """按固定 token 表解析身份。"""

    async def resolve(self, token: str | None) -> Principal:
        if not token:
            raise AuthenticationError("Authentication error: Token not provided")
        principal = TOKENS.get(token)
        if principal is None:
            raise AuthenticationError("Authentication error: Invalid token")
        return principal


class InMemoryUsers:
    def __init__(self) -> None:
        self.inactive: set[str] = set()

    async def find_active_by_id(self, user_id: str) -> dict | None:
        principal = PRINCIPALS.get(user_id)
        if principal is None or user_id in self.inactive:
            return None
        return {"id": principal.id, "name": principal.display_name, "role": principal.role}


class InMemorySessions:
    def __init__(self) -> None:
        self.sessions: dict[str, tuple[str, str]] = {SESSION_ID: (ALICE.id, BOB.id)}

    async def get_participants(self, session_id: str) -> tuple[str, str] | None:
        return self.sessions.get(session_id)


class InMemoryMessageStore:
    """Message Store 的内存实现，回读时补全参与者信息。"""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.fail_writes = False
        self.create_calls = 0
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    async def create(
        self, sender_id: str, receiver_id: str, content: str, session_id: str | None = None,
    ) -> str:
        self.create_calls += 1
        if self.fail_writes:
            raise PersistenceError("Failed to save message: store unavailable")
        message_id = f"m-{len(self.docs) + 1}"
        self._clock += timedelta(seconds=1)
        self.docs[message_id] = {
            "sender": sender_id,
            "receiver": receiver_id,
            "content": content,
            "session": session_id,
            "is_read": False,
            "created_at": self._clock,
        }
        return message_id

    async def find_by_id(self, message_id: str) -> dict | None:
        doc = self.docs.get(message_id)
        if doc is None:
            return None

        def _user(user_id: str) -> dict:
            principal = PRINCIPALS.get(user_id)
            return {
                "id": user_id,
                "name": principal.display_name if principal else None,
                "role": principal.role if principal else None,
            }

        return {
            "id": message_id,
            "sender": _user(doc["sender"]),
            "receiver": _user(doc["receiver"]),
            "content": doc["content"],
            "session": doc["session"],
            "is_read": doc["is_read"],
            "created_at": doc["created_at"],
        }

    async def update_many_read_status(self, sender_id: str, receiver_id: str) -> int:
        if self.fail_writes:
            raise PersistenceError("Failed to mark messages as read: store unavailable")
        count = 0
        for doc in self.docs.values():
            if doc["sender"] == sender_id and doc["receiver"] == receiver_id and not doc["is_read"]:
                doc["is_read"] = True
                count += 1
        return count


# ── 组装 ──────────────────────────────────────────────────────────────

def build_chat_system(
    store: InMemoryMessageStore | None = None,
    sessions: InMemorySessions | None = None,
    users: InMemoryUsers | None = None,
    enforce_session_access: bool = False,
    typing_debounce: float = 0.0,
    message_interval: float = 0.0,
    auth_timeout: float = 1.0,
    presence_per_user: bool = False,
) -> ChatSystem:
    registry = ConnectionRegistry()
    users = users or InMemoryUsers()
    guard = SessionGuard(sessions or InMemorySessions(), enforce_room_access=enforce_session_access)
    return ChatSystem(
        registry=registry,
        gate=ConnectionGate(StaticResolver(), timeout=auth_timeout),
        relay=MessageRelay(
            registry,
            store or InMemoryMessageStore(),
            users,
            guard,
            max_length=50,
            message_interval=message_interval,
        ),
        presence=PresenceBroadcaster(
            registry, guard, typing_debounce=typing_debounce, per_user=presence_per_user,
        ),
        guard=guard,
    )


async def connect(system: ChatSystem, principal: Principal) -> tuple[Connection, FakeWebSocket]:
    """通过握手把一个用户接入系统，并清空握手产生的下行帧。"""
    ws = FakeWebSocket(query_params={"token": f"token-{principal.id}"})
    connection = await system.connect(ws)  # type: ignore[arg-type]
    ws.sent.clear()
    return connection, ws


@pytest.fixture()
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture()
def sessions() -> InMemorySessions:
    return InMemorySessions()


@pytest.fixture()
def system(store: InMemoryMessageStore, sessions: InMemorySessions) -> ChatSystem:
    return build_chat_system(store=store, sessions=sessions)
