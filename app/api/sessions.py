"""
app.api.sessions
~~~~~~~~~~~~~~~~

会话状态 REST 接口。

路由前缀 ``/api``。

端点:
  - ``GET /sessions/{key}`` → 查询会话状态（观众数等）
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_signaling_system
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.sessions import SessionInfoData
from app.services.signaling_system import SignalingSystem

router: APIRouter = APIRouter()


@router.get(
    "/sessions/{key}",
    summary="查询会话状态",
    response_model=ApiResponse[SessionInfoData],
)
@limiter.limit("10/second")
async def session_info(
    request: Request,
    key: str,
    system: SignalingSystem = Depends(get_signaling_system),
):
    """返回指定房间密钥对应的会话状态。

    密钥不存在时返回 ``code=404``，不会创建会话。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        key: 房间密钥。
    """
    session = system.registry.lookup(key)
    if session is None:
        return ApiResponse.fail(msg=f"房间 {key} 不存在", code=404).to_response()
    return ApiResponse.ok(data=SessionInfoData.from_session(session))
