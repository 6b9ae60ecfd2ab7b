"""
描述: Prometheus 指标收集模块
主要功能:
    - 定义开门动作与定时器相关指标 (Counter, Gauge)
    - 提供指标记录的工具函数
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest


# ============================================
# region 指标定义
# ============================================
# 请求计数器
REQUEST_COUNT = Counter(
    "door_relay_requests_total",
    "Total number of inbound requests",
    ["endpoint", "status"],
)

# 开门动作计数
UNLOCK_ACTION_COUNT = Counter(
    "door_relay_unlock_actions_total",
    "Total number of outbound unlock actions",
    ["target", "status"],
)

# 定时器装载计数
TIMER_ARM_COUNT = Counter(
    "door_relay_timer_arm_total",
    "Total number of timer arm attempts",
    ["status"],
)

# 定时器触发计数
TIMER_FIRE_COUNT = Counter(
    "door_relay_timer_fire_total",
    "Total number of timer expiries",
    ["status"],
)

# 待触发定时器数
PENDING_TIMERS = Gauge(
    "door_relay_pending_timers",
    "Number of armed timers held by this process",
)

TIMER_STORE_BACKEND_COUNT = Counter(
    "door_relay_timer_store_backend_total",
    "Timer store backend selection results",
    ["backend", "status"],
)
# endregion
# ============================================


# region 指标记录工具函数
def record_request(endpoint: str, status: int | str) -> None:
    """记录入站请求"""
    REQUEST_COUNT.labels(endpoint=endpoint, status=str(status)).inc()


def record_unlock_action(target: str, success: bool) -> None:
    """记录开门动作结果"""
    UNLOCK_ACTION_COUNT.labels(target=target, status="success" if success else "failure").inc()


def record_timer_arm(status: str) -> None:
    """记录定时器装载结果 (accepted / rejected)"""
    TIMER_ARM_COUNT.labels(status=status).inc()


def record_timer_fire(status: str) -> None:
    """记录定时器触发结果 (success / failure / error / skipped)"""
    TIMER_FIRE_COUNT.labels(status=status).inc()


def set_pending_timers(count: int) -> None:
    PENDING_TIMERS.set(count)


def record_timer_store_backend(backend: str, status: str) -> None:
    """记录定时器存储后端选择结果"""
    TIMER_STORE_BACKEND_COUNT.labels(backend=backend, status=status).inc()


def get_metrics() -> bytes:
    """获取 Prometheus 格式的指标数据"""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
# endregion
