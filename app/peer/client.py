"""
app.peer.client
~~~~~~~~~~~~~~~

信令客户端 —— 通过 WebSocket 连接中继，把收到的消息交给 ``PeerEndpoint``。

用法::

    async with SignalingClient(url, peer_factory, media_source=camera) as client:
        key = await client.start_call()
        ...
"""
from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from app.core.errors import SignalingError, error_from_message
from app.core.logging import get_logger
from app.peer.endpoint import PeerEndpoint, PeerFactory
from app.peer.media import MediaSource, RenderSink

logger = get_logger(__name__)

# 这些消息是对客户端请求的同步回复，靠 ``ref`` 与请求配对
_REPLY_TYPES: frozenset[str] = frozenset({"call_started", "joined", "error"})


class SignalingClient:
    """中继的 asyncio WebSocket 客户端。

    Attributes:
        url: 中继的 WebSocket 地址，例如 ``ws://127.0.0.1:8000/ws/signal``。
        endpoint: 本地协商端点。
    """

    def __init__(
        self,
        url: str,
        peer_factory: PeerFactory,
        *,
        media_source: MediaSource | None = None,
        render_sink: RenderSink | None = None,
        reply_timeout: float = 10.0,
        **endpoint_options: Any,
    ) -> None:
        self.url = url
        self.reply_timeout = reply_timeout
        self.endpoint = PeerEndpoint(
            self.send,
            peer_factory,
            media_source=media_source,
            render_sink=render_sink,
            **endpoint_options,
        )
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._refs = itertools.count(1)

    async def __aenter__(self) -> SignalingClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def party_id(self) -> str | None:
        return self.endpoint.party_id

    async def connect(self) -> None:
        """建立连接，等待 ``hello`` 并启动接收协程。"""
        self._ws = await connect(self.url)
        hello = json.loads(await self._ws.recv())
        await self.endpoint.handle_message(hello)
        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.info("已连接中继 | url=%s | party=%s", self.url, self.party_id)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self.endpoint.close()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def send(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            raise RuntimeError("尚未连接中继，请先调用 connect()")
        await self._ws.send(json.dumps(message))

    # ── 请求 ──────────────────────────────────────────────────────────

    async def start_call(self) -> str:
        """以主播身份开始通话，返回房间密钥。"""
        reply = await self._request({"type": "start_call"})
        return reply["key"]

    async def join_viewer(self, key: str) -> str:
        """以观众身份加入通话，返回主播的 party ID。"""
        reply = await self._request({"type": "join_viewer", "key": key})
        return reply["broadcaster"]

    async def leave(self) -> None:
        """离开当前通话。"""
        await self.send({"type": "leave"})
        await self.endpoint.close("已离开通话")

    async def _request(self, message: dict[str, Any]) -> dict[str, Any]:
        ref = f"r{next(self._refs)}"
        reply_future = asyncio.get_running_loop().create_future()
        self._pending[ref] = reply_future
        try:
            await self.send({**message, "ref": ref})
            reply = await asyncio.wait_for(reply_future, timeout=self.reply_timeout)
        finally:
            self._pending.pop(ref, None)
        if reply["type"] == "error":
            raise error_from_message(reply)
        return reply

    def _resolve_reply(self, message: dict[str, Any]) -> None:
        # 没有 ref 的 error 属于之前的 signal，不能当作请求的回复
        reply_future = self._pending.get(message.get("ref", ""))
        if reply_future is not None and not reply_future.done():
            reply_future.set_result(message)

    # ── 接收 ──────────────────────────────────────────────────────────

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                message = json.loads(raw)
                if message.get("type") in _REPLY_TYPES:
                    self._resolve_reply(message)
                try:
                    await self.endpoint.handle_message(message)
                except SignalingError as e:
                    logger.warning("处理中继消息失败 | kind=%s | detail=%s", e.kind, e.detail)
                except Exception as e:
                    # 单条消息的意外错误只记录，不影响其他对端的协商
                    logger.error("处理中继消息异常 | type=%s | error=%s", message.get("type"), e, exc_info=True)
        except ConnectionClosed:
            logger.info("中继连接已关闭 | party=%s", self.party_id)
        finally:
            await self.endpoint.close("中继连接已断开")
