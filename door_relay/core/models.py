"""
开门动作与定时器模型定义。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class ActionResult:
    target: str
    success: bool
    message: str
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PendingTimer:
    """某个 ScheduleKey 下唯一的待触发定时器，记录存在即为 armed。"""
    key: str
    fire_at_ms: int
    target: str
    created_at_ms: int = 0

    def is_due(self, now_ms: int) -> bool:
        return now_ms >= self.fire_at_ms

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingTimer:
        return cls(
            key=str(data["key"]),
            fire_at_ms=int(data["fire_at_ms"]),
            target=str(data["target"]),
            created_at_ms=int(data.get("created_at_ms") or 0),
        )


@dataclass
class ArmResult:
    accepted: bool
    key: str
    delay_seconds: float
    fire_at_ms: int | None = None
    reason: str = ""

    @classmethod
    def rejected(cls, key: str, existing: PendingTimer | None = None) -> ArmResult:
        return cls(
            accepted=False,
            key=key,
            delay_seconds=0.0,
            fire_at_ms=existing.fire_at_ms if existing else None,
            reason="timer already set",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "armed" if self.accepted else "rejected",
            "key": self.key,
            "delay_seconds": self.delay_seconds,
            "fire_at_ms": self.fire_at_ms,
        }
