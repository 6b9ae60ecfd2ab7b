"""TimerStore 选择工厂。"""

from __future__ import annotations

import logging

from door_relay.config import TimerStoreSettings
from door_relay.core.timers.file_store import FileTimerStore
from door_relay.core.timers.memory_store import MemoryTimerStore
from door_relay.core.timers.redis_store import RedisTimerStore
from door_relay.core.timers.store import TimerStore
from door_relay.utils.metrics import record_timer_store_backend

logger = logging.getLogger(__name__)


def create_timer_store(settings: TimerStoreSettings) -> TimerStore:
    """根据配置创建定时器存储，默认 memory。"""
    backend = str(settings.backend or "memory").strip().lower() or "memory"
    if backend == "memory":
        record_timer_store_backend("memory", "selected")
        logger.info(
            "定时器存储后端: memory",
            extra={"event_code": "timer_store.factory.selected", "backend": "memory"},
        )
        return MemoryTimerStore()

    if backend == "file":
        record_timer_store_backend("file", "selected")
        logger.info(
            "定时器存储后端: file (%s)",
            settings.path,
            extra={"event_code": "timer_store.factory.selected", "backend": "file"},
        )
        return FileTimerStore(settings.path, lock_timeout=settings.lock_timeout_seconds)

    if backend == "redis":
        try:
            store = RedisTimerStore.from_settings(settings.redis)
        except Exception as exc:
            record_timer_store_backend("redis", "fallback_memory")
            logger.warning(
                "Redis 定时器存储初始化失败，回退 memory: %s；"
                "定时器将不再持久化 (重启后丢失)，多实例之间也不再互斥",
                exc,
                extra={"event_code": "timer_store.factory.fallback_memory", "backend": "redis"},
            )
            return MemoryTimerStore()
        record_timer_store_backend("redis", "selected")
        logger.info(
            "定时器存储后端: redis",
            extra={"event_code": "timer_store.factory.selected", "backend": "redis"},
        )
        return store

    record_timer_store_backend(backend, "fallback_memory")
    logger.warning(
        "未知定时器存储后端，回退 memory: %s",
        backend,
        extra={"event_code": "timer_store.factory.unknown_backend", "backend": backend},
    )
    return MemoryTimerStore()
