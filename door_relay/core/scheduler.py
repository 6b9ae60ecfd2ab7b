"""
描述: 延迟单次动作调度器 (DelayedActionScheduler)
主要功能:
    - arm: 每个 ScheduleKey 至多装载一个定时器 (test-and-set)
    - on_expiry: 到期时先原子取走记录 (claim)，取到的实例调用一次开门动作
    - cancel / restore: 取消待触发定时器；启动时从持久化存储恢复唤醒
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, TypeVar

from door_relay.config import TimerSettings
from door_relay.core.errors import UnknownTargetError
from door_relay.core.invoker import ActionInvoker
from door_relay.core.models import ArmResult, PendingTimer
from door_relay.core.timers.backend import TimerBackend
from door_relay.core.timers.store import TimerStore
from door_relay.utils.logger import schedule_key_var
from door_relay.utils.metrics import record_timer_arm, record_timer_fire, set_pending_timers

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_CLAIM_RETRY_MS = 1000


class DelayedActionScheduler:
    """
    延迟动作调度器

    状态机 (每个键):
        IDLE --arm--> ARMED --expiry/cancel--> IDLE
        ARMED --arm--> ARMED (拒绝，不修改记录)

    同一键上的操作由该键的 asyncio.Lock 串行化；不同键互不阻塞。
    store.create_if_absent 与 store.claim 本身是原子的，多进程共享存储时
    同样不会重复装载，也不会重复触发。
    """

    def __init__(
        self,
        settings: TimerSettings,
        invoker: ActionInvoker,
        store: TimerStore,
        backend: TimerBackend,
        default_target: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        参数:
            settings: 定时器配置 (默认延迟等)
            invoker: 到期时使用的开门调用器
            store: PendingTimer 持久化存储
            backend: 唤醒机制
            default_target: arm 未指定 target 时使用的门
            clock: 返回 epoch 秒的时钟（测试可注入）
        """
        self._settings = settings
        self._invoker = invoker
        self._store = store
        self._backend = backend
        self._default_target = default_target
        self._clock = clock
        self._locks: dict[str, _KeyLock] = {}

    # region 生命周期
    def start(self) -> None:
        self._backend.start()

    def shutdown(self) -> None:
        self._backend.shutdown()

    def restore(self) -> int:
        """为存储中的每条记录重新注册唤醒，已过期的会立即触发。"""
        timers = self._store.list_pending()
        for timer in timers:
            self._backend.schedule(timer.key, timer.fire_at_ms, self.on_expiry)
        set_pending_timers(len(timers))
        if timers:
            logger.info(
                "Restored %s pending timer(s)",
                len(timers),
                extra={"event_code": "scheduler.restore.completed"},
            )
        return len(timers)
    # endregion

    # region 核心操作
    def effective_delay(self, delay_seconds: float | None) -> float:
        """非正数、NaN 或缺省时使用默认延迟"""
        if delay_seconds is None:
            return float(self._settings.default_delay_seconds)
        try:
            value = float(delay_seconds)
        except (TypeError, ValueError):
            return float(self._settings.default_delay_seconds)
        if not math.isfinite(value) or value <= 0:
            return float(self._settings.default_delay_seconds)
        return value

    async def arm(
        self,
        key: str,
        delay_seconds: float | None = None,
        target: str | None = None,
    ) -> ArmResult:
        """
        装载定时器

        返回:
            Accepted (含实际延迟) 或 Rejected ("timer already set")

        异常:
            UnknownTargetError: target 未配置
        """
        target = target or self._default_target
        if not self._invoker.has_target(target):
            raise UnknownTargetError(target)
        delay = self.effective_delay(delay_seconds)

        async with self._locked(key):
            now_ms = self._now_ms()
            timer = PendingTimer(
                key=key,
                fire_at_ms=now_ms + int(round(delay * 1000)),
                target=target,
                created_at_ms=now_ms,
            )
            if not await _in_thread(self._store.create_if_absent, timer):
                record_timer_arm("rejected")
                logger.warning(
                    "timer already set",
                    extra={"event_code": "scheduler.arm.rejected", "schedule_key": key},
                )
                return ArmResult.rejected(key, await _in_thread(self._store.get, key))

            try:
                self._backend.schedule(key, timer.fire_at_ms, self.on_expiry)
            except Exception:
                # 唤醒注册失败时回滚记录，避免键被永久占用
                await _in_thread(self._store.claim, key, timer.fire_at_ms)
                raise

            record_timer_arm("accepted")
            set_pending_timers(await _in_thread(self._store.active_count))
            logger.info(
                "timer set to %s seconds",
                _format_seconds(delay),
                extra={"event_code": "scheduler.arm.accepted", "schedule_key": key, "target": target},
            )
            return ArmResult(accepted=True, key=key, delay_seconds=delay, fire_at_ms=timer.fire_at_ms)

    async def on_expiry(self, key: str) -> None:
        """
        到期回调

        先用 store.claim 原子地取走记录，取到的实例才调用开门动作；
        共享存储的多个实例同时收到唤醒时只有一个会触发。
        """
        token = schedule_key_var.set(key)
        try:
            async with self._locked(key):
                timer = await _in_thread(self._store.get, key)
                if timer is None:
                    record_timer_fire("skipped")
                    logger.debug(
                        "No pending timer, expiry ignored",
                        extra={"event_code": "scheduler.expiry.skipped"},
                    )
                    return

                if not timer.is_due(self._now_ms()):
                    self._backend.schedule(key, timer.fire_at_ms, self.on_expiry)
                    record_timer_fire("early")
                    logger.debug(
                        "Expiry delivered early, rescheduled",
                        extra={"event_code": "scheduler.expiry.rescheduled"},
                    )
                    return

                if not await self._claim(timer):
                    return
                await self._fire(timer)
        finally:
            schedule_key_var.reset(token)

    async def cancel(self, key: str) -> bool:
        """取消待触发定时器；不存在时为 no-op 并返回 False"""
        async with self._locked(key):
            removed = await _in_thread(self._store.delete, key)
            self._backend.cancel(key)
            set_pending_timers(await _in_thread(self._store.active_count))
        if removed:
            logger.info("Timer cancelled", extra={"event_code": "scheduler.cancel", "schedule_key": key})
        return removed

    def pending(self, key: str) -> PendingTimer | None:
        return self._store.get(key)
    # endregion

    # region 内部方法
    async def _claim(self, timer: PendingTimer) -> bool:
        try:
            claimed = await _in_thread(self._store.claim, timer.key, timer.fire_at_ms)
        except Exception:
            # 记录仍在存储中，稍后重试
            self._backend.schedule(timer.key, self._now_ms() + _CLAIM_RETRY_MS, self.on_expiry)
            record_timer_fire("error")
            logger.exception(
                "Failed to claim timer record, retrying",
                extra={"event_code": "scheduler.expiry.claim_failed"},
            )
            return False
        if not claimed:
            record_timer_fire("skipped")
            logger.info(
                "Timer already claimed by another instance",
                extra={"event_code": "scheduler.expiry.claimed_elsewhere"},
            )
        return claimed

    async def _fire(self, timer: PendingTimer) -> None:
        status = "error"
        try:
            result = await self._invoker.invoke(timer.target)
            status = "success" if result.success else "failure"
            log = logger.info if result.success else logger.error
            log(
                "Delayed unlock of %s finished: %s",
                timer.target,
                result.message,
                extra={"event_code": f"scheduler.expiry.{status}", "target": timer.target},
            )
        except Exception:
            logger.exception(
                "Delayed unlock of %s raised",
                timer.target,
                extra={"event_code": "scheduler.expiry.error", "target": timer.target},
            )
        finally:
            record_timer_fire(status)
            try:
                set_pending_timers(await _in_thread(self._store.active_count))
            except Exception:
                logger.warning(
                    "Failed to refresh pending timer gauge",
                    exc_info=True,
                    extra={"event_code": "scheduler.metrics.refresh_failed"},
                )

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """按键串行化；没有持有者和等待者时移除该键的锁"""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
    # endregion


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


async def _in_thread(func: Callable[..., _T], *args: Any) -> _T:
    # 文件锁与 Redis 调用是阻塞的，放到线程中执行
    return await asyncio.to_thread(func, *args)


def _format_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
