"""
描述: 开门端点
主要功能:
    - 接收任意路径的请求，路径即 ScheduleKey
    - 非 GET 请求返回 400，其余交给 RequestRouter
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from door_relay.core.router import RequestRouter, UnlockRequest
from door_relay.utils.metrics import record_request


router = APIRouter()

_ACCEPTED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{path:path}", methods=_ACCEPTED_METHODS)
async def unlock(request: Request, path: str) -> JSONResponse:
    """
    开门请求

    参数 (query):
        door: street / floor 单门；缺省、both、all 为双门
        timeout: 双门模式下第二扇门的延迟秒数
    """
    request_router: RequestRouter = request.app.state.request_router
    header = request.app.state.settings.auth.header
    outcome = await request_router.handle(
        UnlockRequest(
            method=request.method,
            path=request.url.path,
            authorization=request.headers.get(header),
            door=request.query_params.get("door"),
            timeout=request.query_params.get("timeout"),
        )
    )
    record_request("unlock", outcome.status_code)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
