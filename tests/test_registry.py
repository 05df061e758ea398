"""
tests.test_registry
~~~~~~~~~~~~~~~~~~~

ConnectionRegistry 房间成员关系与扇出测试。
"""
from __future__ import annotations

import pytest

from learnbridge.schemas.events import PresenceData
from learnbridge.services.connection import Connection, ConnectionState
from learnbridge.services.registry import ConnectionRegistry
from tests.conftest import ALICE, BOB, FakeWebSocket


def make_connection(principal=ALICE) -> tuple[Connection, FakeWebSocket]:
    ws = FakeWebSocket()
    return Connection(ws, principal), ws  # type: ignore[arg-type]


class TestMembership:
    """join / leave 的幂等性与生命周期。"""

    def test_register_joins_personal_room(self) -> None:
        """登记连接时自动加入个人房间。"""
        registry = ConnectionRegistry()
        conn, _ = make_connection()

        assert registry.register(conn) is True
        assert conn in registry.connections_in(ALICE.id)
        assert conn.rooms == {ALICE.id}
        assert registry.is_online(ALICE.id)

    def test_second_tab_is_not_first(self) -> None:
        """同一用户的第二条连接不是首条连接。"""
        registry = ConnectionRegistry()
        tab1, _ = make_connection()
        tab2, _ = make_connection()

        assert registry.register(tab1) is True
        assert registry.register(tab2) is False
        assert registry.connections_of(ALICE.id) == {tab1, tab2}

    def test_join_twice_is_noop(self) -> None:
        """重复加入房间为空操作。"""
        registry = ConnectionRegistry()
        conn, _ = make_connection()
        registry.register(conn)

        assert registry.join(conn, "conversation:u-alice_u-bob") is True
        assert registry.join(conn, "conversation:u-alice_u-bob") is False
        assert registry.connections_in("conversation:u-alice_u-bob") == {conn}
        assert conn.rooms == {ALICE.id, "conversation:u-alice_u-bob"}

    def test_leave_non_member_is_noop(self) -> None:
        """离开未加入的房间为空操作。"""
        registry = ConnectionRegistry()
        conn, _ = make_connection()
        registry.register(conn)

        assert registry.leave(conn, "session:nope") is False
        assert registry.room_count == 1

    def test_empty_rooms_are_reclaimed(self) -> None:
        """最后一个成员离开后房间被回收。"""
        registry = ConnectionRegistry()
        conn, _ = make_connection()
        registry.register(conn)
        registry.join(conn, "session:s-1")

        registry.leave(conn, "session:s-1")

        assert registry.connections_in("session:s-1") == set()
        assert registry.room_count == 1

    def test_remove_leaves_all_rooms(self) -> None:
        """注销连接时退出全部房间。"""
        registry = ConnectionRegistry()
        conn, _ = make_connection()
        registry.register(conn)
        registry.join(conn, "conversation:u-alice_u-bob")
        registry.join(conn, "session:s-1")

        assert registry.remove(conn) is True

        assert conn.state is ConnectionState.CLOSED
        assert conn.rooms == set()
        assert registry.room_count == 0
        assert not registry.is_online(ALICE.id)

    def test_remove_is_idempotent_and_tracks_last_tab(self) -> None:
        """重复注销无害，最后一条连接注销时返回 True。"""
        registry = ConnectionRegistry()
        tab1, _ = make_connection()
        tab2, _ = make_connection()
        registry.register(tab1)
        registry.register(tab2)

        assert registry.remove(tab1) is False
        assert registry.remove(tab1) is False
        assert registry.remove(tab2) is True
        assert registry.connection_count == 0


class TestEmit:
    """扇出：空房间、已关闭连接、发送失败。"""

    @pytest.mark.asyncio
    async def test_emit_to_unknown_room_is_noop(self) -> None:
        """向不存在的房间广播为空操作。"""
        registry = ConnectionRegistry()

        delivered = await registry.emit_to_room("conversation:x_y", "userOnline", PresenceData(user_id="x"))

        assert delivered == 0

    @pytest.mark.asyncio
    async def test_emit_sends_one_frame_per_connection(self) -> None:
        """重复的目标只发送一次。"""
        registry = ConnectionRegistry()
        alice, alice_ws = make_connection(ALICE)
        bob, bob_ws = make_connection(BOB)
        registry.register(alice)
        registry.register(bob)

        delivered = await registry.emit([alice, bob, alice], "userOnline", PresenceData(user_id="u-carol"))

        assert delivered == 2
        assert alice_ws.payloads("userOnline") == [{"userId": "u-carol"}]
        assert bob_ws.payloads("userOnline") == [{"userId": "u-carol"}]

    @pytest.mark.asyncio
    async def test_emit_with_exclude(self) -> None:
        """广播可排除指定连接。"""
        registry = ConnectionRegistry()
        alice, alice_ws = make_connection(ALICE)
        bob, bob_ws = make_connection(BOB)
        for conn in (alice, bob):
            registry.register(conn)
            registry.join(conn, "session:s-1")

        await registry.emit_to_room("session:s-1", "userOnline", PresenceData(user_id="x"), exclude=[alice])

        assert alice_ws.sent == []
        assert len(bob_ws.sent) == 1

    @pytest.mark.asyncio
    async def test_closed_connection_is_skipped(self) -> None:
        """已关闭的连接不再收到事件。"""
        registry = ConnectionRegistry()
        conn, ws = make_connection()
        registry.register(conn)
        registry.remove(conn)

        delivered = await registry.emit([conn], "userOnline", PresenceData(user_id="x"))

        assert delivered == 0
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_marks_connection_closed(self) -> None:
        """一个连接发送失败不影响其他连接。"""
        registry = ConnectionRegistry()
        alice, alice_ws = make_connection(ALICE)
        bob, bob_ws = make_connection(BOB)
        registry.register(alice)
        registry.register(bob)
        alice_ws.fail_sends = True

        delivered = await registry.emit([alice, bob], "userOnline", PresenceData(user_id="x"))

        assert delivered == 1
        assert alice.state is ConnectionState.CLOSED
        assert len(bob_ws.sent) == 1
        # 真正注销仍由连接自身的收尾流程负责
        assert registry.remove(alice) is True
