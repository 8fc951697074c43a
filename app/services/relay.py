"""
app.services.relay
~~~~~~~~~~~~~~~~~~

信令中继 —— 根据会话注册表把协商消息路由给正确的对端。

中继只读取负载的 ``type`` 标签（offer / answer / candidate），
从不解析或修改会话描述与候选地址本身。

默认路由规则（``to`` 为空）:
  - 主播发出的消息 → 所有尚未与主播建立协商的观众；
  - 观众发出的消息 → 只发给主播。
"""
from __future__ import annotations

import asyncio
from typing import Any

from app.core.errors import OutOfOrderNegotiation, PartyNotInSession, UnknownKey
from app.core.logging import get_logger
from app.schemas.signaling import (
    ForwardedSignal,
    SessionClosedNotice,
    Signal,
    ViewerJoined,
    ViewerLeft,
)
from app.services.connection import PartyConnection
from app.services.negotiation import NegotiationPhase
from app.services.registry import LeaveOutcome, Session, SessionRegistry
from app.services.roles import SessionHandle

logger = get_logger(__name__)


class SignalingRelay:
    """信令中继。

    Attributes:
        registry: 会话注册表（路由时只读查询）。
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self._connections: dict[str, PartyConnection] = {}

    # ── 连接表 ────────────────────────────────────────────────────────

    def register(self, connection: PartyConnection) -> None:
        self._connections[connection.party_id] = connection

    def unregister(self, party_id: str) -> None:
        self._connections.pop(party_id, None)

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self._connections)

    # ── 路由 ──────────────────────────────────────────────────────────

    async def route(self, from_party: str, key: str, signal: Signal) -> list[str]:
        """把一条协商消息转发给对端。

        Args:
            from_party: 发送方 party ID。
            key: 发送方所在的房间密钥。
            signal: 协商消息。

        Returns:
            实际转发到的接收方列表。

        Raises:
            UnknownKey: 会话不存在。
            PartyNotInSession: 发送方不是会话成员，或 ``to`` 不是它的对端。
            OutOfOrderNegotiation: 消息方向或顺序不合法。
        """
        session = self.registry.lookup(key)
        if session is None:
            raise UnknownKey(f"房间 {key} 不存在")
        if not session.is_member(from_party):
            raise PartyNotInSession(f"{from_party} 不在房间 {key} 中")

        kind = signal.kind
        from_broadcaster = from_party == session.broadcaster_id
        if from_broadcaster:
            if kind == "answer":
                raise OutOfOrderNegotiation("主播只发起 offer，不发送 answer")
            targets = self._broadcaster_targets(session, signal.to)
        else:
            if signal.to is not None and signal.to != session.broadcaster_id:
                raise PartyNotInSession(f"观众只能向主播发送信令，{signal.to} 不是主播")
            if kind == "offer":
                raise OutOfOrderNegotiation("只有主播可以发起 offer")
            targets = [session.broadcaster_id]

        recipients: list[str] = []
        for target in targets:
            viewer_id = target if from_broadcaster else from_party
            pair = session.negotiations.get(viewer_id)
            if pair is None:
                logger.warning("协商对不存在，丢弃 %s | key=%s | viewer=%s", kind, key, viewer_id)
                continue

            async with pair.lock:
                if kind == "offer":
                    pair.receive_offer()
                elif kind == "answer":
                    try:
                        pair.send_answer()
                    except OutOfOrderNegotiation:
                        pair.reset()
                        raise
                elif pair.is_failed:
                    logger.warning("协商对已失败，丢弃候选地址 | key=%s | viewer=%s", key, viewer_id)
                    continue
            recipients.append(target)

        message = ForwardedSignal(sender=from_party, payload=signal.payload).model_dump(by_alias=True)
        delivered = await self._deliver_many(recipients, message)

        if kind == "answer" and delivered:
            pair = session.negotiations.get(from_party)
            if pair is not None:
                async with pair.lock:
                    # 等锁期间可能已被新的 offer 重置
                    if pair.phase is NegotiationPhase.ANSWER_SENT:
                        pair.establish()
                        logger.info("协商已建立 | key=%s | viewer=%s", key, from_party)

        logger.debug(
            "转发 %s | key=%s | from=%s | to=%s",
            kind, key, from_party, ",".join(recipients) or "-",
        )
        return recipients

    def _broadcaster_targets(self, session: Session, to: str | None) -> list[str]:
        if to is not None:
            if to not in session.viewers:
                raise PartyNotInSession(f"{to} 不在房间 {session.key} 中")
            return [to]
        targets = []
        for viewer_id in sorted(session.viewers):
            pair = session.negotiations.get(viewer_id)
            if pair is None or not pair.is_established:
                targets.append(viewer_id)
        return targets

    # ── 通知 ──────────────────────────────────────────────────────────

    async def notify_viewer_joined(self, handle: SessionHandle) -> None:
        """通知主播有新观众加入。"""
        message = ViewerJoined(viewer=handle.party_id).model_dump()
        await self._deliver(handle.broadcaster_id, message)

    async def handle_departure(self, outcome: LeaveOutcome, notify_leaver: bool = False) -> None:
        """根据离开结果通知剩余成员。

        会话关闭时向每个被移出的观众推送 ``session_closed``，并解除其连接绑定；
        观众离开时通知主播 ``viewer_left``。

        Args:
            outcome: 注册表 ``leave`` 的结果。
            notify_leaver: 是否也通知离开的一方（进程关闭时使用）。
        """
        if outcome.closed:
            message = SessionClosedNotice(key=outcome.key).model_dump()
            recipients = set(outcome.evicted)
            if notify_leaver:
                recipients.add(outcome.party_id)
            for party_id in recipients:
                connection = self._connections.get(party_id)
                if connection is not None:
                    connection.unbind()
            await self._deliver_many(sorted(recipients), message)
        elif outcome.removed and outcome.broadcaster_id is not None:
            message = ViewerLeft(viewer=outcome.party_id).model_dump()
            await self._deliver(outcome.broadcaster_id, message)

    # ── 投递 ──────────────────────────────────────────────────────────

    async def _deliver(self, party_id: str, message: dict[str, Any]) -> bool:
        connection = self._connections.get(party_id)
        if connection is None:
            logger.warning("接收方不在线，丢弃 %s | party=%s", message.get("type"), party_id)
            return False
        try:
            await connection.send(message)
        except Exception as e:
            # 一个连接的发送失败不能影响发送方或其他接收方
            logger.warning("投递失败 | party=%s | error=%s", party_id, e)
            return False
        return True

    async def _deliver_many(self, party_ids: list[str], message: dict[str, Any]) -> list[str]:
        results = await asyncio.gather(*(self._deliver(p, message) for p in party_ids))
        return [p for p, ok in zip(party_ids, results) if ok]
