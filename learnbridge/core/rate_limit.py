"""
learnbridge.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件的内存限流器。

用于两处：
  - 同一连接连续发送私信的最小间隔（防刷屏）
  - ``typing`` 事件的去抖（同一连接对同一接收者）
"""
from __future__ import annotations

import time
from collections.abc import Hashable


class IntervalRateLimiter:
    """基于内存的简单间隔限流器。

    记录每个 key 上一次被放行的时间，间隔不足则拒绝。
    ``interval_seconds <= 0`` 时全部放行。
    """

    def __init__(self, interval_seconds: float = 2.0) -> None:
        self.interval_seconds = interval_seconds
        self._last_allowed: dict[Hashable, float] = {}

    def is_allowed(self, key: Hashable) -> bool:
        """检查 key 是否允许通过。

        Args:
            key: 限流标识，如 ``(connection_id, receiver_id)``。

        Returns:
            是否允许。如果允许，则同时更新上次放行时间。
        """
        if self.interval_seconds <= 0:
            return True

        now = time.monotonic()
        last_time = self._last_allowed.get(key)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_allowed[key] = now
            return True
        return False

    def reset(self, key: Hashable) -> None:
        """清除单个 key 的记录，下一次调用必定放行。"""
        self._last_allowed.pop(key, None)

    def remove_prefix(self, prefix: Hashable) -> None:
        """清理所有以 ``prefix`` 为首元素的元组 key（连接断开时使用）。"""
        stale = [
            key for key in self._last_allowed
            if key == prefix or (isinstance(key, tuple) and key and key[0] == prefix)
        ]
        for key in stale:
            del self._last_allowed[key]
