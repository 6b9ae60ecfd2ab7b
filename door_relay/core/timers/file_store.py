"""
描述: 基于 JSON 文件的定时器存储实现。
主要功能:
    - PendingTimer 持久化到本地文件，进程重启后可恢复
    - 文件锁保证多进程下 create_if_absent 的原子性
    - 先写临时文件再替换，避免半写入
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from door_relay.core.models import PendingTimer
from door_relay.utils.filelock import FileLock

logger = logging.getLogger(__name__)


class FileTimerStore:
    """JSON 文件定时器存储。"""

    def __init__(self, path: str | Path, lock_timeout: float = 5.0) -> None:
        self._path = Path(path)
        self._lock = FileLock(self._path.with_name(self._path.name + ".lock"), timeout=lock_timeout)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> PendingTimer | None:
        with self._lock:
            raw = self._read().get(key)
        return self._parse(key, raw)

    def create_if_absent(self, timer: PendingTimer) -> bool:
        with self._lock:
            data = self._read()
            if self._parse(timer.key, data.get(timer.key)) is not None:
                return False
            data[timer.key] = timer.to_dict()
            self._write(data)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._read()
            if key not in data:
                return False
            data.pop(key)
            self._write(data)
            return True

    def claim(self, key: str, fire_at_ms: int) -> bool:
        with self._lock:
            data = self._read()
            timer = self._parse(key, data.get(key))
            if timer is None or timer.fire_at_ms != fire_at_ms:
                return False
            data.pop(key)
            self._write(data)
            return True

    def list_pending(self) -> list[PendingTimer]:
        with self._lock:
            data = self._read()
        timers = [self._parse(key, raw) for key, raw in data.items()]
        return [timer for timer in timers if timer is not None]

    def active_count(self) -> int:
        return len(self.list_pending())

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        text = self._path.read_text(encoding="utf-8").strip()
        if not text:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(
                "定时器文件损坏，按空存储处理: %s",
                self._path,
                extra={"event_code": "timer_store.file.corrupted"},
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def _parse(self, key: str, raw: Any) -> PendingTimer | None:
        if not isinstance(raw, dict):
            return None
        try:
            return PendingTimer.from_dict({**raw, "key": key})
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "反序列化定时器失败，已忽略无效值",
                extra={"event_code": "timer_store.file.deserialize_failed", "schedule_key": key},
            )
            return None
