"""
Redis 定时器存储实现。

说明：
- create_if_absent 使用 SET NX，多实例共享同一 Redis 时依然只有一个定时器。
- claim 用 Lua 脚本比较 fire_at_ms 后删除，到期触发只在一个实例上发生。
- 记录不设置过期时间，由触发或取消负责删除。
"""

from __future__ import annotations

import json
import logging
from typing import Any

from door_relay.core.models import PendingTimer

logger = logging.getLogger(__name__)

# compare-and-delete: 仅当 fire_at_ms 一致时删除
_CLAIM_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local stored = string.match(raw, '"fire_at_ms"%s*:%s*(%d+)')
if stored ~= ARGV[1] then
    return 0
end
return redis.call('DEL', KEYS[1])
"""


class RedisTimerStore:
    """Redis-backed 定时器存储。"""

    def __init__(self, client: Any, key_prefix: str = "door_relay:timer:") -> None:
        self._client = client
        self._key_prefix = str(key_prefix or "door_relay:timer:")

    @classmethod
    def from_settings(cls, redis_settings: Any) -> RedisTimerStore:
        import redis

        dsn = str(getattr(redis_settings, "dsn", "") or "").strip()
        socket_timeout = float(getattr(redis_settings, "socket_timeout_seconds", 1.0) or 1.0)
        if dsn:
            client = redis.Redis.from_url(
                dsn,
                decode_responses=True,
                socket_timeout=socket_timeout,
            )
        else:
            client = redis.Redis(
                host=str(getattr(redis_settings, "host", "localhost") or "localhost"),
                port=int(getattr(redis_settings, "port", 6379) or 6379),
                db=int(getattr(redis_settings, "db", 0) or 0),
                password=getattr(redis_settings, "password", None),
                decode_responses=True,
                socket_timeout=socket_timeout,
            )

        try:
            client.ping()
        except Exception as exc:
            raise RuntimeError("redis ping failed") from exc

        return cls(client=client, key_prefix=str(getattr(redis_settings, "key_prefix", "door_relay:timer:")))

    def get(self, key: str) -> PendingTimer | None:
        raw = self._client.get(self._redis_key(key))
        if not raw:
            return None
        return self._deserialize(key, raw)

    def create_if_absent(self, timer: PendingTimer) -> bool:
        payload = json.dumps(timer.to_dict())
        return bool(self._client.set(self._redis_key(timer.key), payload, nx=True))

    def delete(self, key: str) -> bool:
        return bool(self._client.delete(self._redis_key(key)))

    def claim(self, key: str, fire_at_ms: int) -> bool:
        result = self._client.eval(_CLAIM_SCRIPT, 1, self._redis_key(key), str(int(fire_at_ms)))
        return bool(result)

    def list_pending(self) -> list[PendingTimer]:
        timers: list[PendingTimer] = []
        for redis_key in self._iter_keys():
            key = redis_key[len(self._key_prefix):]
            timer = self.get(key)
            if timer is not None:
                timers.append(timer)
        return timers

    def active_count(self) -> int:
        return len(self._iter_keys())

    def _iter_keys(self) -> list[str]:
        pattern = f"{self._key_prefix}*"
        return [
            str(item)
            for item in self._client.scan_iter(match=pattern)
            if str(item).startswith(self._key_prefix)
        ]

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _deserialize(self, key: str, raw: str) -> PendingTimer | None:
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                return None
            return PendingTimer.from_dict({**data, "key": key})
        except (ValueError, KeyError, TypeError):
            logger.warning(
                "反序列化定时器失败，已忽略无效值",
                extra={"event_code": "timer_store.redis.deserialize_failed", "schedule_key": key},
            )
            return None
