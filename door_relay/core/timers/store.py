"""
定时器存储抽象接口。

用于解耦内存、文件与 Redis 实现；create_if_absent 必须是原子的 test-and-set。
"""

from __future__ import annotations

from typing import Protocol

from door_relay.core.models import PendingTimer


class TimerStore(Protocol):
    """PendingTimer 存储接口。"""

    def get(self, key: str) -> PendingTimer | None:
        ...

    def create_if_absent(self, timer: PendingTimer) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...

    def claim(self, key: str, fire_at_ms: int) -> bool:
        """仅当记录仍存在且 fire_at_ms 一致时删除并返回 True；多个实例竞争同一记录时只有一个成功。"""
        ...

    def list_pending(self) -> list[PendingTimer]:
        ...

    def active_count(self) -> int:
        ...
