"""
描述: 定时器装载端点
主要功能:
    - GET /_timers/{key}: 装载定时器，可通过 timeout 覆盖默认延迟
    - DELETE /_timers/{key}: 取消待触发定时器
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from door_relay.core.router import RequestRouter, UnlockRequest
from door_relay.utils.metrics import record_request


router = APIRouter(prefix="/_timers")


def _build_request(request: Request, key: str) -> UnlockRequest:
    header = request.app.state.settings.auth.header
    return UnlockRequest(
        method=request.method,
        path=key,
        authorization=request.headers.get(header),
        timeout=request.query_params.get("timeout"),
    )


@router.get("/{key:path}")
async def arm_timer(request: Request, key: str) -> JSONResponse:
    """装载定时器；已存在时返回 400 timer_already_set"""
    request_router: RequestRouter = request.app.state.request_router
    outcome = await request_router.arm_timer(_build_request(request, key))
    record_request("timers.arm", outcome.status_code)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.delete("/{key:path}")
async def cancel_timer(request: Request, key: str) -> JSONResponse:
    """取消定时器；不存在时 cancelled=false"""
    request_router: RequestRouter = request.app.state.request_router
    outcome = await request_router.cancel_timer(_build_request(request, key))
    record_request("timers.cancel", outcome.status_code)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
