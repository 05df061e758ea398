"""
tests.test_ws_endpoint
~~~~~~~~~~~~~~~~~~~~~~

``/ws/chat`` 端点的集成测试 —— 通过 Starlette TestClient 建立真实的 WebSocket 会话，
数据库与令牌校验使用 conftest 中的内存实现。
"""
from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from learnbridge.api import ws
from learnbridge.services.gate import CLOSE_AUTH_FAILED
from tests.conftest import ALICE, BOB, InMemoryMessageStore, build_chat_system


@pytest.fixture()
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture()
def app(message_store: InMemoryMessageStore) -> FastAPI:
    application = FastAPI()
    application.include_router(ws.router)
    application.state.chat_system = build_chat_system(store=message_store)
    return application


def test_private_message_round_trip(app: FastAPI, message_store: InMemoryMessageStore) -> None:
    """两个用户经真实 WebSocket 完成发送、接收与已读回执。"""
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/chat?token=token-{ALICE.id}") as alice:
            assert alice.receive_json()["event"] == "connected"

            with client.websocket_connect("/ws/chat") as bob:
                # 无查询参数时通过第一帧认证
                bob.send_json({"event": "auth", "data": {"token": f"token-{BOB.id}"}})
                connected = bob.receive_json()
                assert connected["event"] == "connected"
                assert connected["data"]["userId"] == BOB.id
                assert alice.receive_json() == {"event": "userOnline", "data": {"userId": BOB.id}}

                alice.send_json({"event": "privateMessage", "data": {"receiver": BOB.id, "content": "hi"}})

                sent = alice.receive_json()
                received = bob.receive_json()
                assert sent["event"] == "messageSent"
                assert received["event"] == "newMessage"
                assert received["data"]["id"] == sent["data"]["id"]
                assert received["data"]["isRead"] is False

                bob.send_json({"event": "markAsRead", "data": {"sender": ALICE.id}})

                assert alice.receive_json() == {
                    "event": "messagesRead",
                    "data": {"by": BOB.id, "for": ALICE.id, "count": 1},
                }
                assert [doc["is_read"] for doc in message_store.docs.values()] == [True]


def test_invalid_message_is_reported_to_sender(app: FastAPI, message_store: InMemoryMessageStore) -> None:
    """缺少内容的私信只给发送者回 messageError，不触达存储。"""
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/chat?token=token-{ALICE.id}") as alice:
            alice.receive_json()

            alice.send_json({"event": "privateMessage", "data": {"receiver": BOB.id}})

            assert alice.receive_json() == {
                "event": "messageError",
                "data": {"error": "Receiver and content are required"},
            }
            assert message_store.create_calls == 0


def test_invalid_token_closes_connection(app: FastAPI) -> None:
    """无效 token 以 4401 关闭连接，且不会登记到注册表。"""
    with TestClient(app) as client:
        with client.websocket_connect("/ws/chat?token=forged") as conn:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                conn.receive_json()

    assert exc_info.value.code == CLOSE_AUTH_FAILED
    assert app.state.chat_system.registry.connection_count == 0


def test_binary_first_frame_closes_connection(app: FastAPI) -> None:
    """握手阶段发来二进制帧时以 4401 关闭连接。"""
    with TestClient(app) as client:
        with client.websocket_connect("/ws/chat") as conn:
            conn.send_bytes(b"\x00\x01")
            with pytest.raises(WebSocketDisconnect) as exc_info:
                conn.receive_json()

    assert exc_info.value.code == CLOSE_AUTH_FAILED
    assert exc_info.value.reason == "Authentication error: Token not provided"


def test_binary_frame_after_handshake_is_dropped(app: FastAPI) -> None:
    """认证后的二进制帧被丢弃，连接继续处理后续事件。"""
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/chat?token=token-{ALICE.id}") as alice:
            alice.receive_json()

            alice.send_bytes(b"\x00\x01")
            alice.send_json({"event": "joinConversation", "data": BOB.id})

            assert alice.receive_json()["event"] == "conversationJoined"


def test_health_reports_connections() -> None:
    """健康检查返回统一应答体与在线统计。"""
    from learnbridge.main import app as main_app

    client = TestClient(main_app)
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["code"] == 200
    assert body["data"]["status"] == "ok"
    assert body["data"]["connections"] == 0
