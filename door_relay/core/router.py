"""
描述: 请求路由 (RequestRouter)
主要功能:
    - 校验请求方法与鉴权凭证
    - 解析 door / timeout 参数并选择单门或双门模式
    - 调用开门动作与延迟调度器，并将结果映射为对外响应
"""

from __future__ import annotations

import hmac
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from door_relay.config import Settings
from door_relay.core.errors import (
    AuthError,
    DoorRelayError,
    InvalidDelayError,
    MethodNotAllowedError,
    RemoteActionError,
    SchedulingConflictError,
    UnknownTargetError,
)
from door_relay.core.invoker import ActionInvoker
from door_relay.core.models import ActionResult, ArmResult
from door_relay.core.scheduler import DelayedActionScheduler

logger = logging.getLogger(__name__)


# region 数据结构
@dataclass
class UnlockRequest:
    """与 Web 框架无关的入站请求"""
    method: str
    path: str
    authorization: str | None = None
    door: str | None = None
    timeout: str | None = None


@dataclass
class RouteOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, exc: DoorRelayError, **extra: Any) -> RouteOutcome:
        return cls(status_code=exc.status_code, body={**exc.to_dict(), **extra})
# endregion


def derive_schedule_key(path: str) -> str:
    """由请求路径派生 ScheduleKey，同一路径共享同一个定时器"""
    normalized = "/" + str(path or "").strip().strip("/")
    return normalized


class RequestRouter:
    """
    入站请求路由

    流程:
        1. 仅接受 GET
        2. Authorization 头与配置密钥逐字节比较
        3. door 缺省 / both / all 走双门模式，否则单门
        4. 双门模式: 首门成功后才装载第二扇门的定时器
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ActionInvoker,
        scheduler: DelayedActionScheduler,
    ) -> None:
        self._settings = settings
        self._invoker = invoker
        self._scheduler = scheduler

    # region 入口
    async def handle(self, request: UnlockRequest) -> RouteOutcome:
        """处理开门请求，所有内部错误都在此转换为 RouteOutcome"""
        try:
            self._check_method(request.method)
            self.authorize(request.authorization)
            target = self.resolve_target(request.door)
            if target is not None:
                return await self._handle_single(target)
            delay = self.parse_delay(request.timeout)
            return await self._handle_dual(derive_schedule_key(request.path), delay)
        except DoorRelayError as exc:
            return RouteOutcome.from_error(exc)

    async def arm_timer(self, request: UnlockRequest) -> RouteOutcome:
        """调度器自身的装载入口：返回实际延迟或 timer_already_set"""
        try:
            self._check_method(request.method)
            self.authorize(request.authorization)
            delay = self.parse_delay(request.timeout)
            key = derive_schedule_key(request.path)
            arm = await self._scheduler.arm(key, delay, self._settings.dual.second_target)
            if not arm.accepted:
                raise SchedulingConflictError(key)
            return RouteOutcome(status_code=200, body={"status": "ok", "timer": arm.to_dict()})
        except DoorRelayError as exc:
            return RouteOutcome.from_error(exc)

    async def cancel_timer(self, request: UnlockRequest) -> RouteOutcome:
        try:
            self.authorize(request.authorization)
            key = derive_schedule_key(request.path)
            cancelled = await self._scheduler.cancel(key)
            return RouteOutcome(status_code=200, body={"status": "ok", "key": key, "cancelled": cancelled})
        except DoorRelayError as exc:
            return RouteOutcome.from_error(exc)
    # endregion

    # region 校验
    def authorize(self, credential: str | None) -> None:
        expected = self._settings.auth.secret
        if not expected:
            logger.warning(
                "Auth secret is not configured, rejecting request",
                extra={"event_code": "router.auth.unconfigured"},
            )
            raise AuthError()
        if credential is None or not hmac.compare_digest(
            credential.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning("Unauthorized request", extra={"event_code": "router.auth.rejected"})
            raise AuthError()

    def resolve_target(self, door: str | None) -> str | None:
        """返回单门模式的 target；双门模式返回 None"""
        if door is None or door == "" or door in self._settings.dual.aliases:
            return None
        if not self._invoker.has_target(door):
            logger.error("Door %s not found", door, extra={"event_code": "router.target.unknown"})
            raise UnknownTargetError(door)
        return door

    def parse_delay(self, raw: str | None) -> float | None:
        """缺省返回 None (由调度器使用默认值)；无法解析或超出上限时报 400"""
        if raw is None or raw.strip() == "":
            return None
        try:
            value = float(raw)
        except ValueError:
            raise InvalidDelayError(raw) from None
        if not math.isfinite(value) or value < 0:
            raise InvalidDelayError(raw)
        if value > self._settings.timer.max_delay_seconds:
            raise InvalidDelayError(raw, reason="too_large")
        return value

    def _check_method(self, method: str) -> None:
        if method.upper() != "GET":
            raise MethodNotAllowedError(method)
    # endregion

    # region 模式处理
    async def _handle_single(self, target: str) -> RouteOutcome:
        result = await self._invoker.invoke(target)
        if not result.success:
            return self._remote_failure(result)
        return RouteOutcome(status_code=200, body={"status": "ok", "results": [result.to_dict()]})

    async def _handle_dual(self, key: str, delay: float | None) -> RouteOutcome:
        dual = self._settings.dual
        first = await self._invoker.invoke(dual.first_target)
        if not first.success and not dual.arm_on_first_failure:
            return self._remote_failure(first)

        arm = await self._scheduler.arm(key, delay, dual.second_target)
        if not first.success:
            return self._remote_failure(first, timer=arm.to_dict())
        if not arm.accepted:
            return self._conflict(key, first, arm)
        return RouteOutcome(
            status_code=200,
            body={
                "status": "ok",
                "results": [first.to_dict()],
                "timer": {**arm.to_dict(), "target": dual.second_target},
            },
        )

    def _remote_failure(self, result: ActionResult, **extra: Any) -> RouteOutcome:
        error = RemoteActionError(result.target, result.message)
        return RouteOutcome.from_error(error, results=[result.to_dict()], **extra)

    def _conflict(self, key: str, first: ActionResult, arm: ArmResult) -> RouteOutcome:
        error = SchedulingConflictError(key)
        return RouteOutcome.from_error(error, results=[first.to_dict()], timer=arm.to_dict())
    # endregion
