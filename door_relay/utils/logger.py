"""
描述: 日志工具
主要功能:
    - JSON / 文本两种输出格式，event_code 等 extra 字段原样带出
    - 请求上下文 (request_id, schedule_key) 通过 contextvars 注入每条日志
    - 鉴权密钥与锁平台 API Key 脱敏
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from typing import Any, Iterable

from door_relay.config import LoggingSettings


# region 上下文变量
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
schedule_key_var: ContextVar[str] = ContextVar("schedule_key", default="")

_CONTEXT_VARS: tuple[tuple[str, ContextVar[str]], ...] = (
    ("request_id", request_id_var),
    ("schedule_key", schedule_key_var),
)
# endregion

# LogRecord 自带属性，不作为 extra 输出
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}
_TEXT_EXTRAS = ("event_code", "target", "duration_ms")
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "uvicorn.access")


def current_context() -> dict[str, str]:
    """当前协程上下文中已设置的字段"""
    return {name: var.get() for name, var in _CONTEXT_VARS if var.get()}


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


# region Formatter
class StructuredJsonFormatter(logging.Formatter):
    """一行一个 JSON 对象；上下文字段先于 extra 写入，extra 同名时覆盖"""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
            **_extras(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class SimpleFormatter(logging.Formatter):
    """本地调试用的单行文本"""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{self.formatTime(record)}] {record.levelname:5} {record.name}: {record.getMessage()}"

        context = current_context()
        tags = []
        if "request_id" in context:
            tags.append(f"req={context['request_id'][:8]}")
        if "schedule_key" in context:
            tags.append(f"key={context['schedule_key']}")
        if tags:
            line = f"{line} ({', '.join(tags)})"

        fields = [f"{key}={getattr(record, key)}" for key in _TEXT_EXTRAS if hasattr(record, key)]
        if fields:
            line = f"{line} [{', '.join(fields)}]"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
# endregion


# region 脱敏
class SecretMaskFilter(logging.Filter):
    """将日志消息中的敏感值替换为占位符"""

    def __init__(self, secrets: Iterable[str], placeholder: str = "***") -> None:
        super().__init__()
        self._secrets = [item for item in secrets if item]
        self._placeholder = placeholder

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self._secrets:
            masked = masked.replace(secret, self._placeholder)
        if masked != message:
            record.msg = masked
            record.args = None
        return True
# endregion


# region 上下文管理
def set_request_context(request_id: str | None = None, schedule_key: str | None = None) -> None:
    if request_id:
        request_id_var.set(request_id)
    if schedule_key:
        schedule_key_var.set(schedule_key)


def clear_request_context() -> None:
    for _, var in _CONTEXT_VARS:
        var.set("")


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]
# endregion


def setup_logging(settings: LoggingSettings, secrets: Iterable[str] = ()) -> logging.Handler:
    """
    初始化 root logger

    参数:
        settings: 日志配置 (级别、格式、脱敏)
        secrets: 需要脱敏的敏感值

    返回:
        安装到 root logger 的 handler
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter() if settings.format == "json" else SimpleFormatter())
    if settings.mask.enabled:
        handler.addFilter(SecretMaskFilter(secrets, settings.mask.placeholder))

    level = logging.getLevelName(settings.level.upper())
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        handlers=[handler],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
