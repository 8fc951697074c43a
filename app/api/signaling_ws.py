"""
app.api.signaling_ws
~~~~~~~~~~~~~~~~~~~~

WebSocket 信令接口 —— 主播创建通话、观众凭密钥加入、双方交换协商消息。

提供 ``/ws/signal`` 端点。连接建立后中继先推送 ``hello``（含 party ID），
之后每条文本帧都是一个带 ``type`` 字段的 JSON 对象。

消息协议（客户端 → 中继）:
  - ``{"type": "start_call"}``                        → ``call_started``
  - ``{"type": "join_viewer", "key": K}``             → ``joined`` / ``error``
  - ``{"type": "signal", "to": P | null, "payload"}`` → 转发给对端
  - ``{"type": "leave"}``                             → 离开当前会话
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.core.errors import MalformedPayload
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.schemas.signaling import JoinViewer, Leave, Signal, StartCall, parse_client_message
from app.services.signaling_system import SignalingSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()

ClientMessage = StartCall | JoinViewer | Signal | Leave

RATE_LIMITED_MESSAGE: dict[str, str] = {
    "type": "error",
    "kind": "RateLimited",
    "detail": "信令发送过快，消息已丢弃",
}


def _request_ref(data: Any) -> str | None:
    """取出客户端请求携带的 ``ref`` 标签（没有或类型不对时返回 ``None``）。"""
    if isinstance(data, dict) and isinstance(data.get("ref"), str):
        return data["ref"]
    return None


def _with_ref(message: dict[str, Any], ref: str | None) -> dict[str, Any]:
    if ref is None:
        return message
    return {**message, "ref": ref}


@router.websocket("/ws/signal")
async def websocket_signal_endpoint(websocket: WebSocket) -> None:
    """WebSocket 信令端点。

    每个连接拆成接收与处理两个协程，通过有界队列衔接：
    接收端按到达时间做限流和格式校验，处理端按到达顺序逐条处理。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    system: SignalingSystem = websocket.app.state.signaling_system
    connection = await system.connect(websocket)
    token = request_id_ctx_var.set(f"ws-{connection.party_id[:8]}")
    logger.info("参与方已连接 | party=%s | 在线: %d", connection.party_id, system.relay.online_count)

    ws_limiter = WebSocketRateLimiter(
        max_messages=settings.WS_RATE_LIMIT_MESSAGES,
        interval_seconds=settings.WS_RATE_LIMIT_INTERVAL,
    )
    queue: asyncio.Queue[ClientMessage | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)

    async def receive_loop() -> None:
        try:
            while True:
                raw: str = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.info("消息不是合法 JSON，已拒绝 | error=%s", e)
                    data = None
                ref = _request_ref(data)

                if not ws_limiter.is_allowed(connection.party_id):
                    await connection.send(_with_ref(RATE_LIMITED_MESSAGE, ref))
                    continue
                if data is None:
                    await connection.send(MalformedPayload("无法解析的信令消息").to_message(ref))
                    continue
                try:
                    message = parse_client_message(data)
                except ValidationError as e:
                    logger.info("消息格式错误，已拒绝 | error=%s", e)
                    await connection.send(MalformedPayload("无法解析的信令消息").to_message(ref))
                    continue
                # 队列满时等待处理端，保持同一连接的消息顺序
                await queue.put(message)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 接收异常: %s", e, exc_info=True)
        finally:
            await queue.put(None)  # 发送结束信号给处理协程

    async def process_loop() -> None:
        while True:
            message = await queue.get()
            if message is None:
                break
            try:
                await system.handle(connection, message)
            except Exception as e:
                # 单条消息的意外错误只记录，不影响本连接后续消息和其他会话
                logger.error("信令处理异常: %s", e, exc_info=True)

    try:
        await asyncio.gather(receive_loop(), process_loop())
    finally:
        await system.disconnect(connection)
        ws_limiter.remove_client(connection.party_id)
        logger.info("参与方已断开 | party=%s | 在线: %d", connection.party_id, system.relay.online_count)
        request_id_ctx_var.reset(token)
