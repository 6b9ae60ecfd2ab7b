"""
描述: 错误分类
主要功能:
    - 统一定义开门服务的异常类型
    - 每个异常携带 code 与对外 HTTP 状态码，便于 API 层统一映射
"""

from __future__ import annotations

from typing import Any


# ============================================
# region 基础异常
# ============================================
class DoorRelayError(Exception):
    """Door Relay 基础异常类"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """对外响应体，只暴露 code 与简短文案"""
        return {
            "error": self.code,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"
# endregion
# ============================================


# ============================================
# region 校验异常 (400)
# ============================================
class ValidationError(DoorRelayError):
    """请求校验失败，不产生任何状态变更"""

    status_code = 400

    def __init__(
        self,
        message: str = "Bad request",
        code: str = "bad_request",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


class MethodNotAllowedError(ValidationError):
    """仅接受 GET 请求"""

    def __init__(self, method: str) -> None:
        super().__init__(
            message="Bad request",
            code="method_not_allowed",
            details={"method": method},
        )


class UnknownTargetError(ValidationError):
    """门 (target) 未在配置中登记"""

    def __init__(self, target: str) -> None:
        super().__init__(
            message=f"Unknown door: {target}",
            code="unknown_target",
            details={"target": target},
        )
        self.target = target


class InvalidDelayError(ValidationError):
    """延迟秒数无法解析或超出上限"""

    def __init__(self, raw: str, reason: str = "malformed") -> None:
        super().__init__(
            message="Invalid timeout",
            code="invalid_delay",
            details={"raw": raw, "reason": reason},
        )
# endregion
# ============================================


class AuthError(DoorRelayError):
    """凭证缺失或不匹配"""

    status_code = 401

    def __init__(self) -> None:
        super().__init__(message="Unauthorized", code="unauthorized")


class RemoteActionError(DoorRelayError):
    """远程开门调用失败 (非 2xx 或网络异常)"""

    status_code = 500

    def __init__(self, target: str, cause: str = "") -> None:
        super().__init__(
            message="Error",
            code="remote_action_failed",
            details={"target": target, "cause": cause},
        )
        self.target = target


class SchedulingConflictError(DoorRelayError):
    """同一键已有待触发定时器"""

    status_code = 400

    def __init__(self, key: str) -> None:
        super().__init__(
            message="Timer already set",
            code="timer_already_set",
            details={"key": key},
        )
        self.key = key
