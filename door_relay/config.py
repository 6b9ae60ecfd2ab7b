"""
描述: Door Relay 配置
主要功能:
    - pydantic 模型描述各组件配置，由 create_app 显式传入各组件
    - config.yaml 读取 (支持 ${VAR} / ${VAR:-default})
    - 环境变量覆盖与进程级单例 get_settings()
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


# region 配置模型定义
class ServerSettings(BaseModel):
    """服务器配置"""
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False


class AuthSettings(BaseModel):
    """入站鉴权配置 (Authorization 头需与 secret 完全一致)"""
    secret: str = ""
    header: str = "Authorization"


class LockSettings(BaseModel):
    """智能锁开放平台配置"""
    api_base: str = "https://api.nuki.io"
    api_key: str = ""
    targets: dict[str, str] = Field(default_factory=lambda: {"street": "", "floor": ""})
    timeout_seconds: float = 10.0


class DualModeSettings(BaseModel):
    """双门模式: 先开 first_target，延迟后开 second_target"""
    first_target: str = "street"
    second_target: str = "floor"
    aliases: list[str] = Field(default_factory=lambda: ["both", "all"])
    arm_on_first_failure: bool = False


class RedisTimerStoreSettings(BaseModel):
    dsn: str = ""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str | None = None
    key_prefix: str = "door_relay:timer:"
    socket_timeout_seconds: float = 1.0


class TimerStoreSettings(BaseModel):
    backend: str = "memory"
    path: str = "data/timers.json"
    lock_timeout_seconds: float = 5.0
    redis: RedisTimerStoreSettings = Field(default_factory=RedisTimerStoreSettings)


class TimerSettings(BaseModel):
    """延迟定时器配置"""
    default_delay_seconds: float = 50.0
    max_delay_seconds: float = 3600.0
    store: TimerStoreSettings = Field(default_factory=TimerStoreSettings)


class LoggingMaskSettings(BaseModel):
    enabled: bool = True
    placeholder: str = "***"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "json"
    mask: LoggingMaskSettings = Field(default_factory=LoggingMaskSettings)


class Settings(BaseModel):
    """全局配置聚合根"""
    server: ServerSettings = Field(default_factory=ServerSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    dual: DualModeSettings = Field(default_factory=DualModeSettings)
    timer: TimerSettings = Field(default_factory=TimerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def secrets(self) -> list[str]:
        """需要在日志中脱敏的敏感值"""
        return [value for value in (self.auth.secret, self.lock.api_key) if value]
# endregion


# region 加载
# 环境变量名 -> 配置路径；优先级: 环境变量 > config.yaml > 模型默认值
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "AUTH_KEY": ("auth", "secret"),
    "NUKI_API_KEY": ("lock", "api_key"),
    "LOCK_API_BASE": ("lock", "api_base"),
    "STREET_ID": ("lock", "targets", "street"),
    "FLOOR_ID": ("lock", "targets", "floor"),
    "TIMER_DEFAULT_DELAY": ("timer", "default_delay_seconds"),
    "TIMER_STORE_BACKEND": ("timer", "store", "backend"),
    "TIMER_STORE_PATH": ("timer", "store", "path"),
    "REDIS_DSN": ("timer", "store", "redis", "dsn"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
    "SERVER_HOST": ("server", "host"),
    "SERVER_PORT": ("server", "port"),
}


def _substitute(match: re.Match[str]) -> str:
    name, sep, default = match.group(1).partition(":-")
    return os.environ.get(name, default if sep else "")


def _expand_env(value: Any) -> Any:
    """展开 ${VAR} / ${VAR:-default} 占位符，递归处理列表与字典"""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(_substitute, value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open(encoding="utf-8") as stream:
        loaded = yaml.safe_load(stream)
    if not isinstance(loaded, dict):
        return {}
    return _expand_env(loaded)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for env_name, keys in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        node = data
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        node[keys[-1]] = raw
    return data


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    读取配置

    参数:
        config_path: YAML 路径；缺省取 CONFIG_PATH 环境变量，再缺省为 ./config.yaml
    """
    path = Path(config_path or os.environ.get("CONFIG_PATH") or "config.yaml")
    return Settings.model_validate(_apply_env_overrides(_read_config_file(path)))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """进程级配置单例"""
    return load_settings()
# endregion
