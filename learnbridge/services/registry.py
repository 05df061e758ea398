"""
learnbridge.services.registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护「房间 → 连接」与「用户 → 连接」两张内存表，并提供扇出能力。

注册表由服务实例持有（挂在 ``app.state`` 上），不是模块级单例，
测试中可以并存多个互不干扰的实例。

所有修改操作都是同步的，中间没有 ``await``，在单线程事件循环下天然原子；
只有 ``emit`` 会挂起，而它只读取调用时传入的目标快照。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable

from learnbridge.core.logging import get_logger
from learnbridge.schemas.events import OutboundPayload, ServerEventName, encode_event
from learnbridge.services.connection import Connection
from learnbridge.services.rooms import personal_room_id

logger = get_logger(__name__)


class ConnectionRegistry:
    """房间成员关系与在线连接的内存表。"""

    def __init__(self) -> None:
        self._rooms: dict[str, set[Connection]] = {}
        self._by_user: dict[str, set[Connection]] = {}

    # ── 连接生命周期 ──────────────────────────────────────────────────

    def register(self, connection: Connection) -> bool:
        """登记新连接并自动加入其个人房间。

        Returns:
            是否为该用户的第一条在线连接。
        """
        connections = self._by_user.setdefault(connection.user_id, set())
        first = not connections
        connections.add(connection)
        self.join(connection, personal_room_id(connection.user_id))
        return first

    def remove(self, connection: Connection) -> bool:
        """注销连接：退出全部房间并从在线表移除。重复调用是无害的。

        Returns:
            本次调用后该用户是否已没有任何在线连接（且本次确实移除了连接）。
        """
        connection.mark_closed()
        for room in list(connection.rooms):
            self.leave(connection, room)

        connections = self._by_user.get(connection.user_id)
        if connections is None or connection not in connections:
            return False
        connections.discard(connection)
        if connections:
            return False
        del self._by_user[connection.user_id]
        return True

    # ── 房间成员关系 ──────────────────────────────────────────────────

    def join(self, connection: Connection, room: str) -> bool:
        """加入房间，已在房间内时为空操作。

        Returns:
            是否为新加入。
        """
        members = self._rooms.setdefault(room, set())
        if connection in members:
            return False
        members.add(connection)
        connection.rooms.add(room)
        return True

    def leave(self, connection: Connection, room: str) -> bool:
        """离开房间，不在房间内时为空操作。空房间会被回收。

        Returns:
            是否确实离开了房间。
        """
        members = self._rooms.get(room)
        connection.rooms.discard(room)
        if members is None or connection not in members:
            return False
        members.discard(connection)
        if not members:
            del self._rooms[room]
        return True

    # ── 查询 ──────────────────────────────────────────────────────────

    def connections_in(self, room: str) -> set[Connection]:
        return set(self._rooms.get(room, ()))

    def connections_of(self, user_id: str) -> set[Connection]:
        return set(self._by_user.get(user_id, ()))

    def all_connections(self) -> set[Connection]:
        return {conn for conns in self._by_user.values() for conn in conns}

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def online_user_ids(self) -> list[str]:
        return list(self._by_user)

    @property
    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._by_user.values())

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    # ── 扇出 ──────────────────────────────────────────────────────────

    async def emit(
        self,
        targets: Iterable[Connection],
        event: ServerEventName,
        payload: OutboundPayload,
    ) -> int:
        """向一组连接各发送一帧（重复的目标只发一次）。目标为空时为空操作。

        发送失败的连接会被标记为关闭（真正的注销由该连接自身的收尾流程完成），
        不影响其他目标。

        Returns:
            成功送达的连接数。
        """
        recipients = [conn for conn in dict.fromkeys(targets) if conn.is_open]
        if not recipients:
            return 0

        frame = encode_event(event, payload)
        results = await asyncio.gather(
            *(conn.send_text(frame) for conn in recipients),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(recipients, results):
            if isinstance(result, Exception):
                logger.warning("推送 %s 失败，标记连接关闭 | conn=%s | %s", event, conn.id, result)
                conn.mark_closed()
            else:
                delivered += 1
        return delivered

    async def emit_to_room(
        self,
        room: str,
        event: ServerEventName,
        payload: OutboundPayload,
        exclude: Iterable[Connection] = (),
    ) -> int:
        """向房间内所有连接广播（可排除部分连接）。"""
        targets = self.connections_in(room) - set(exclude)
        return await self.emit(targets, event, payload)
