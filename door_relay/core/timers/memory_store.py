"""
描述: 基于内存的定时器存储实现。
主要功能:
    - 进程内保存 PendingTimer，每个键至多一条
    - 线程锁保证 create_if_absent 的原子性
"""

from __future__ import annotations

import threading

from door_relay.core.models import PendingTimer


class MemoryTimerStore:
    """内存定时器存储，不跨进程、不跨重启。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, PendingTimer] = {}

    def get(self, key: str) -> PendingTimer | None:
        with self._lock:
            return self._timers.get(key)

    def create_if_absent(self, timer: PendingTimer) -> bool:
        """不存在时写入并返回 True；已存在时不做任何修改并返回 False。"""
        with self._lock:
            if timer.key in self._timers:
                return False
            self._timers[timer.key] = timer
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._timers.pop(key, None) is not None

    def claim(self, key: str, fire_at_ms: int) -> bool:
        with self._lock:
            timer = self._timers.get(key)
            if timer is None or timer.fire_at_ms != fire_at_ms:
                return False
            del self._timers[key]
            return True

    def list_pending(self) -> list[PendingTimer]:
        with self._lock:
            return list(self._timers.values())

    def active_count(self) -> int:
        with self._lock:
            return len(self._timers)
