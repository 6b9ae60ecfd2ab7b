"""
描述: 定时唤醒后端
主要功能:
    - 按键注册一次性唤醒 (schedule / cancel / has_pending)
    - 基于 APScheduler 的 date 触发器实现
依赖: APScheduler
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

FireCallback = Callable[[str], Awaitable[None]]


class TimerBackend(Protocol):
    """唤醒机制接口，同一键至多一个待唤醒任务。"""

    def schedule(self, key: str, fire_at_ms: int, on_fire: FireCallback) -> None: ...

    def cancel(self, key: str) -> bool: ...

    def has_pending(self, key: str) -> bool: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...


class APSchedulerTimerBackend:
    """
    APScheduler 唤醒后端

    功能:
        - 每个键对应一个 date job，job id 由键派生
        - 重复 schedule 同一键时替换原 job（持久化记录才是唯一真相）
        - 错过的触发时间不丢弃 (misfire_grace_time=None)
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None, job_prefix: str = "door_relay:") -> None:
        self._scheduler = scheduler or AsyncIOScheduler()
        self._job_prefix = job_prefix

    def schedule(self, key: str, fire_at_ms: int, on_fire: FireCallback) -> None:
        run_date = datetime.fromtimestamp(fire_at_ms / 1000, tz=timezone.utc)
        self._scheduler.add_job(
            on_fire,
            "date",
            run_date=run_date,
            args=[key],
            id=self._job_id(key),
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug(
            "Timer job scheduled",
            extra={"event_code": "timer.backend.scheduled", "schedule_key": key, "run_date": run_date.isoformat()},
        )

    def cancel(self, key: str) -> bool:
        try:
            self._scheduler.remove_job(self._job_id(key))
        except JobLookupError:
            return False
        return True

    def has_pending(self, key: str) -> bool:
        return self._scheduler.get_job(self._job_id(key)) is not None

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Timer backend started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Timer backend stopped")

    def _job_id(self, key: str) -> str:
        return f"{self._job_prefix}{key}"
