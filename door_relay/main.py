"""
描述: Door Relay 主入口
主要功能:
    - FastAPI 应用初始化 (create_app)
    - 组装开门调用器、定时器存储、唤醒后端与调度器
    - 生命周期: 启动唤醒后端并恢复持久化定时器，停止时释放资源
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from door_relay import __version__
from door_relay.api.health import router as health_router
from door_relay.api.timers import router as timers_router
from door_relay.api.unlock import router as unlock_router
from door_relay.config import Settings, get_settings
from door_relay.core.errors import DoorRelayError
from door_relay.core.invoker import ActionInvoker, HttpActionInvoker
from door_relay.core.router import RequestRouter
from door_relay.core.scheduler import DelayedActionScheduler
from door_relay.core.timers import APSchedulerTimerBackend, TimerBackend, TimerStore, create_timer_store
from door_relay.utils.logger import clear_request_context, generate_request_id, set_request_context, setup_logging

logger = logging.getLogger(__name__)


# region 生命周期管理
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    应用生命周期回调

    功能:
        - Startup: 启动唤醒后端，恢复存储中的定时器
        - Shutdown: 停止唤醒后端，关闭 HTTP 客户端
    """
    scheduler: DelayedActionScheduler = app.state.scheduler
    scheduler.start()
    scheduler.restore()
    logger.info("Door Relay started", extra={"event_code": "app.started"})

    yield

    scheduler.shutdown()
    invoker = app.state.invoker
    if isinstance(invoker, HttpActionInvoker):
        await invoker.aclose()
    logger.info("Door Relay shutdown complete", extra={"event_code": "app.stopped"})
# endregion


# region 应用工厂
def create_app(
    settings: Settings | None = None,
    *,
    invoker: ActionInvoker | None = None,
    store: TimerStore | None = None,
    backend: TimerBackend | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    构建 FastAPI 应用

    参数:
        settings: 显式配置；缺省时读取 get_settings()
        invoker / store / backend: 可替换的协作者（测试注入）
        clock: 调度器使用的时钟
    """
    settings = settings or get_settings()
    setup_logging(settings.logging, secrets=settings.secrets())

    invoker = invoker or HttpActionInvoker(settings.lock)
    scheduler = DelayedActionScheduler(
        settings=settings.timer,
        invoker=invoker,
        store=store or create_timer_store(settings.timer.store),
        backend=backend or APSchedulerTimerBackend(),
        default_target=settings.dual.second_target,
        clock=clock,
    )

    app = FastAPI(
        title="Door Relay",
        version=__version__,
        description="受鉴权保护的远程开门服务，支持双门延迟开启",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.invoker = invoker
    app.state.scheduler = scheduler
    app.state.request_router = RequestRouter(settings=settings, invoker=invoker, scheduler=scheduler)

    @app.middleware("http")
    async def request_context(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("x-request-id") or generate_request_id()
        set_request_context(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["x-request-id"] = request_id
        return response

    @app.exception_handler(DoorRelayError)
    async def door_relay_error_handler(request: Request, exc: DoorRelayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error: %s",
            exc.__class__.__name__,
            exc_info=exc,
            extra={"event_code": "app.unhandled_error"},
        )
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Error"})

    # 顺序: 固定路径优先，开门端点兜底匹配任意路径
    app.include_router(health_router)
    app.include_router(timers_router)
    app.include_router(unlock_router)
    return app
# endregion


def build_default_app() -> FastAPI:
    """读取 .env 与 config.yaml 构建应用（uvicorn factory 入口）"""
    load_dotenv()
    return create_app(get_settings())
