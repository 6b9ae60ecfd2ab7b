"""
描述: 定时器持久化与唤醒模块。
主要功能:
    - PendingTimer 存储（内存、文件、Redis）
    - 基于 APScheduler 的唤醒后端
"""

from door_relay.core.timers.backend import APSchedulerTimerBackend, TimerBackend
from door_relay.core.timers.factory import create_timer_store
from door_relay.core.timers.file_store import FileTimerStore
from door_relay.core.timers.memory_store import MemoryTimerStore
from door_relay.core.timers.redis_store import RedisTimerStore
from door_relay.core.timers.store import TimerStore

__all__ = [
    "APSchedulerTimerBackend",
    "TimerBackend",
    "create_timer_store",
    "FileTimerStore",
    "MemoryTimerStore",
    "RedisTimerStore",
    "TimerStore",
]
