"""
app.peer.endpoint
~~~~~~~~~~~~~~~~~

参与方本地的协商驱动器。

``PeerEndpoint`` 消费中继推送的消息（``hello`` / ``viewer_joined`` /
``signal`` / ``session_closed`` ...），为每个对端维护一个
``NegotiationSession`` 和一个 ``PeerConnection``：

- 主播：观众加入时创建连接并发起 offer，收到 answer 后完成协商；
- 观众：收到 offer 后应答，完成协商后把远端流交给渲染目标。

它不关心消息如何传输，只通过构造时注入的 ``send`` 协程发送。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from pydantic import ValidationError

from app.core.errors import OutOfOrderNegotiation
from app.core.logging import get_logger
from app.peer.media import MediaSource, MediaStreamHandle, PeerConnection, RenderSink
from app.schemas.signaling import IceCandidate, SessionDescription
from app.services.connection import Role
from app.services.negotiation import NegotiationPhase, NegotiationRole, NegotiationSession

logger = get_logger(__name__)

SendCallable = Callable[[dict[str, Any]], Awaitable[None]]
PeerFactory = Callable[[str], PeerConnection]
PhaseListener = Callable[[str, NegotiationPhase], None]
ClosedListener = Callable[[str], None]


class PeerEndpoint:
    """一个参与方的本地信令端点。

    Attributes:
        party_id: 中继分配的 party ID（收到 ``hello`` 后填充）。
        role: 本端角色。
        key: 当前房间密钥。
        broadcaster_id: 观众所在会话的主播 ID。
        pairs: 对端 ID → 协商状态机。
        peers: 对端 ID → 对等连接。
    """

    def __init__(
        self,
        send: SendCallable,
        peer_factory: PeerFactory,
        *,
        party_id: str | None = None,
        media_source: MediaSource | None = None,
        render_sink: RenderSink | None = None,
        grace_period: float | None = None,
        on_phase_change: PhaseListener | None = None,
        on_session_closed: ClosedListener | None = None,
    ) -> None:
        self.party_id = party_id
        self.role: Role | None = None
        self.key: str | None = None
        self.broadcaster_id: str | None = None
        self.pairs: dict[str, NegotiationSession] = {}
        self.peers: dict[str, PeerConnection] = {}

        self._send = send
        self._peer_factory = peer_factory
        self._media_source = media_source
        self._render_sink = render_sink
        self._grace_period = grace_period
        self._on_phase_change = on_phase_change
        self._on_session_closed = on_session_closed
        self._local_stream: MediaStreamHandle | None = None
        self._closing: set[asyncio.Task[None]] = set()

    # ── 中继消息入口 ──────────────────────────────────────────────────

    async def handle_message(self, message: dict[str, Any]) -> None:
        """处理一条中继推送的消息。"""
        kind = message.get("type")
        if kind == "hello":
            self.party_id = message["party_id"]
        elif kind == "call_started":
            self.role = Role.BROADCASTER
            self.key = message["key"]
        elif kind == "joined":
            self.role = Role.VIEWER
            self.key = message["key"]
            self.broadcaster_id = message["broadcaster"]
        elif kind == "viewer_joined":
            await self.offer_to(message["viewer"])
        elif kind == "viewer_left":
            await self.drop_peer(message["viewer"], "观众已离开")
        elif kind == "signal":
            await self.handle_signal(message["from"], message["payload"])
        elif kind == "session_closed":
            closed_key = message.get("key") or self.key or ""
            await self.close("会话已关闭")
            if self._on_session_closed is not None:
                self._on_session_closed(closed_key)
        elif kind == "error":
            logger.warning("中继返回错误 | kind=%s | detail=%s", message.get("kind"), message.get("detail"))
        else:
            logger.debug("忽略未知消息 | type=%s", kind)

    async def handle_signal(self, remote_id: str, payload: dict[str, Any]) -> None:
        """按负载标签分发一条协商消息。"""
        kind = payload.get("type")
        if kind == "offer":
            await self._on_offer(remote_id, payload)
        elif kind == "answer":
            await self._on_answer(remote_id, payload)
        elif kind == "candidate":
            await self._on_candidate(remote_id, payload)
        else:
            logger.warning("未知的协商负载，已丢弃 | from=%s | type=%s", remote_id, kind)

    # ── 主播：发起 ────────────────────────────────────────────────────

    async def offer_to(self, remote_id: str) -> None:
        """向指定观众发起（或重新发起）offer。

        Raises:
            OutOfOrderNegotiation: 本端不是主播，或已有未完成的 offer。
        """
        if self.role is not Role.BROADCASTER:
            raise OutOfOrderNegotiation("只有主播可以发起 offer")

        pair = self._pair(remote_id, NegotiationRole.OFFERER)
        async with pair.lock:
            pair.begin_offer()
            try:
                peer = self._peer(remote_id)
                offer = await peer.create_offer()
                await peer.set_local_description(offer)
                await self._send_signal(remote_id, offer.model_dump())
            except Exception as e:
                logger.error("发起 offer 失败 | remote=%s | error=%s", remote_id, e, exc_info=True)
                pair.fail(f"发起 offer 失败: {e}")
                return
        self._notify(pair)

    async def send_local_candidate(self, remote_id: str, candidate: IceCandidate | dict[str, Any]) -> None:
        """把本地采集到的候选地址发给指定对端。"""
        if isinstance(candidate, dict):
            candidate = IceCandidate.model_validate({"type": "candidate", **candidate})
        await self._send_signal(remote_id, candidate.model_dump())

    # ── 收到协商消息 ──────────────────────────────────────────────────

    async def _on_offer(self, remote_id: str, payload: dict[str, Any]) -> None:
        if self.role is Role.BROADCASTER:
            logger.warning("主播不接受 offer，已丢弃 | from=%s", remote_id)
            return

        pair = self._pair(remote_id, NegotiationRole.ANSWERER)
        async with pair.lock:
            try:
                offer = SessionDescription.model_validate(payload)
            except ValidationError as e:
                pair.fail(f"offer 格式错误: {e.error_count()} 处")
                return

            pair.receive_offer()
            try:
                peer = self._peer(remote_id)
                await peer.set_remote_description(offer)
                await pair.remote_description_applied()
                answer = await peer.create_answer()
                await peer.set_local_description(answer)
                await self._send_signal(remote_id, answer.model_dump())
                pair.send_answer()
                # 应答交给传输层即视为本端协商完成
                pair.establish()
            except Exception as e:
                logger.error("应答 offer 失败 | remote=%s | error=%s", remote_id, e, exc_info=True)
                pair.fail(f"应答 offer 失败: {e}")
                return
            self._attach_remote(remote_id)
        self._notify(pair)

    async def _on_answer(self, remote_id: str, payload: dict[str, Any]) -> None:
        pair = self.pairs.get(remote_id)
        if pair is None:
            logger.warning("协商对不存在，丢弃 answer | from=%s", remote_id)
            return

        async with pair.lock:
            try:
                answer = SessionDescription.model_validate(payload)
            except ValidationError as e:
                pair.fail(f"answer 格式错误: {e.error_count()} 处")
                return

            try:
                pair.receive_answer()
            except OutOfOrderNegotiation as e:
                # 顺序错误只影响这一对：重置后等待新一轮 offer
                logger.warning("answer 顺序错误，重置协商对 | from=%s | %s", remote_id, e.detail)
                pair.reset()
                return

            try:
                await self.peers[remote_id].set_remote_description(answer)
                await pair.remote_description_applied()
                pair.establish()
            except Exception as e:
                logger.error("应用 answer 失败 | remote=%s | error=%s", remote_id, e, exc_info=True)
                pair.fail(f"应用 answer 失败: {e}")
                return
            self._attach_remote(remote_id)
        self._notify(pair)

    async def _on_candidate(self, remote_id: str, payload: dict[str, Any]) -> None:
        pair = self.pairs.get(remote_id)
        if pair is None:
            logger.warning("协商对不存在，丢弃候选地址 | from=%s", remote_id)
            return
        try:
            candidate = IceCandidate.model_validate(payload)
        except ValidationError:
            logger.warning("候选地址格式错误，已丢弃 | from=%s", remote_id)
            return

        async with pair.lock:
            await pair.add_candidate(candidate)

    # ── 拆除 ──────────────────────────────────────────────────────────

    async def drop_peer(self, remote_id: str, reason: str) -> None:
        """让与某个对端的协商失败，并关闭对等连接。"""
        pair = self.pairs.get(remote_id)
        if pair is not None:
            pair.fail(reason)
        else:
            self._close_peer(remote_id)
        await self._wait_closing()

    async def close(self, reason: str = "端点已关闭") -> None:
        """让所有协商失败，关闭所有对等连接。"""
        for pair in list(self.pairs.values()):
            pair.fail(reason)
        for remote_id in list(self.peers):
            self._close_peer(remote_id)
        await self._wait_closing()
        self.role = None
        self.key = None
        self.broadcaster_id = None

    # ── 内部 ──────────────────────────────────────────────────────────

    def _pair(self, remote_id: str, role: NegotiationRole) -> NegotiationSession:
        pair = self.pairs.get(remote_id)
        if pair is None:
            pair = NegotiationSession(
                local_id=self.party_id or "",
                remote_id=remote_id,
                role=role,
                apply_candidate=partial(self._apply_candidate, remote_id),
                grace_period=self._grace_period,
                on_failed=self._on_pair_failed,
            )
            self.pairs[remote_id] = pair
        return pair

    def _peer(self, remote_id: str) -> PeerConnection:
        peer = self.peers.get(remote_id)
        if peer is None:
            peer = self._peer_factory(remote_id)
            if self._media_source is not None:
                if self._local_stream is None:
                    self._local_stream = self._media_source.capture()
                peer.add_local_stream(self._local_stream)
            self.peers[remote_id] = peer
        return peer

    async def _apply_candidate(self, remote_id: str, candidate: IceCandidate) -> None:
        peer = self.peers.get(remote_id)
        if peer is None:
            logger.warning("对等连接不存在，丢弃候选地址 | remote=%s", remote_id)
            return
        await peer.add_ice_candidate(candidate)

    async def _send_signal(self, remote_id: str, payload: dict[str, Any]) -> None:
        await self._send({"type": "signal", "to": remote_id, "payload": payload})

    def _attach_remote(self, remote_id: str) -> None:
        if self._render_sink is None:
            return
        stream = self.peers[remote_id].remote_stream()
        if stream is not None:
            self._render_sink.attach(stream)

    def _on_pair_failed(self, pair: NegotiationSession) -> None:
        if self.pairs.get(pair.remote_id) is pair:
            del self.pairs[pair.remote_id]
        self._close_peer(pair.remote_id)
        self._notify(pair)

    def _close_peer(self, remote_id: str) -> None:
        peer = self.peers.pop(remote_id, None)
        if peer is None:
            return
        task = asyncio.get_running_loop().create_task(peer.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _wait_closing(self) -> None:
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    def _notify(self, pair: NegotiationSession) -> None:
        if self._on_phase_change is not None:
            self._on_phase_change(pair.remote_id, pair.phase)
