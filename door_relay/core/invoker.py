"""
描述: 开门动作调用器 (ActionInvoker)
主要功能:
    - 将 target 名称解析为智能锁设备 ID
    - 调用开放平台 unlock 接口 (httpx)
    - 远程失败统一折叠为 ActionResult(success=False)，不向上抛出
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

import httpx

from door_relay.config import LockSettings
from door_relay.core.errors import UnknownTargetError
from door_relay.core.models import ActionResult
from door_relay.utils.metrics import record_unlock_action

logger = logging.getLogger(__name__)


class ActionInvoker(Protocol):
    """开门能力接口"""

    def has_target(self, target: str) -> bool: ...

    async def invoke(self, target: str) -> ActionResult: ...


class HttpActionInvoker:
    """
    基于 HTTP 的开门调用器

    功能:
        - 每次 invoke 发送一次 POST，无重试、无内部状态
        - 2xx 视为成功，其余状态码、超时与网络错误视为失败
    """

    def __init__(self, settings: LockSettings, client: httpx.AsyncClient | None = None) -> None:
        """
        参数:
            settings: 锁平台配置
            client: 可注入的 httpx 客户端（测试时传入 MockTransport）
        """
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)

    def has_target(self, target: str) -> bool:
        return target in self._settings.targets

    def device_url(self, target: str) -> str:
        if not self.has_target(target):
            raise UnknownTargetError(target)
        device_id = self._settings.targets[target]
        return f"{self._settings.api_base.rstrip('/')}/smartlock/{device_id}/action/unlock"

    async def invoke(self, target: str) -> ActionResult:
        url = self.device_url(target)
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }

        start = time.perf_counter()
        try:
            response = await self._client.post(
                url,
                headers=headers,
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException:
            result = ActionResult(target=target, success=False, message="unlock request timed out")
        except httpx.HTTPError as exc:
            result = ActionResult(
                target=target,
                success=False,
                message=f"unlock request failed: {exc.__class__.__name__}",
            )
        else:
            if response.is_success:
                result = ActionResult(
                    target=target,
                    success=True,
                    message=f"Opening {target}",
                    status_code=response.status_code,
                )
            else:
                result = ActionResult(
                    target=target,
                    success=False,
                    message=f"{response.status_code} {response.reason_phrase}".strip(),
                    status_code=response.status_code,
                )

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        record_unlock_action(target, result.success)
        if result.success:
            logger.info(
                "Opening %s",
                target,
                extra={"event_code": "invoker.unlock.success", "target": target, "duration_ms": duration_ms},
            )
        else:
            logger.error(
                "Unlock %s failed: %s",
                target,
                result.message,
                extra={"event_code": "invoker.unlock.failed", "target": target, "duration_ms": duration_ms},
            )
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
