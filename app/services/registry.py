"""
app.services.registry
~~~~~~~~~~~~~~~~~~~~~

会话注册表 —— 进程内房间密钥 → 会话状态的唯一映射，
也是“谁在哪个通话里”的唯一事实来源。

所有先读后写的操作（创建、加入、离开）都按房间密钥串行化：
每个密钥一把 ``asyncio.Lock``，不同会话之间互不竞争。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from app.core.errors import KeyExhaustion, RoleConflict, SessionClosed, UnknownKey
from app.core.logging import get_logger
from app.core.settings import settings
from app.services.keygen import generate_key
from app.services.negotiation import NegotiationRole, NegotiationSession

logger = get_logger(__name__)


class SessionState(str, Enum):
    """通话会话状态。"""

    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Session:
    """一次直播通话。

    Attributes:
        key: 房间密钥。
        broadcaster_id: 主播 party ID，创建后不可变。
        viewers: 已加入的观众。
        state: 会话状态。
        negotiations: 中继侧的协商对镜像，按观众 ID 索引。
        created_at: 创建时间（UTC）。
    """

    key: str
    broadcaster_id: str
    viewers: set[str] = field(default_factory=set)
    state: SessionState = SessionState.OPEN
    negotiations: dict[str, NegotiationSession] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_member(self, party_id: str) -> bool:
        return party_id == self.broadcaster_id or party_id in self.viewers


@dataclass
class LeaveOutcome:
    """``leave`` 的结果，供中继发送通知。

    Attributes:
        key: 房间密钥。
        party_id: 离开的一方。
        broadcaster_id: 会话主播（会话不存在时为 ``None``）。
        closed: 本次离开是否关闭了会话。
        evicted: 因会话关闭被移出的观众。
        removed: 是否真的移除了一名成员。
    """

    key: str
    party_id: str
    broadcaster_id: str | None = None
    closed: bool = False
    evicted: set[str] = field(default_factory=set)
    removed: bool = False


class SessionRegistry:
    """会话注册表。

    - ``create_session(broadcaster_id)``    → 生成密钥并创建 ``open`` 会话
    - ``join_as_viewer(key, viewer_id)``    → 加入观众，``open → active``
    - ``leave(key, party_id)``              → 观众离开 / 主播离开关闭会话
    - ``lookup(key)``                       → 只读查询（中继路由用）
    """

    def __init__(
        self,
        key_factory: Callable[[], str] = generate_key,
        max_attempts: int | None = None,
    ) -> None:
        self._key_factory = key_factory
        self._max_attempts: int = max_attempts or settings.ROOM_KEY_MAX_ATTEMPTS
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def lock_for(self, key: str) -> asyncio.Lock:
        """获取某个房间密钥的锁（懒创建）。"""
        return self._locks.setdefault(key, asyncio.Lock())

    async def create_session(self, broadcaster_id: str) -> str:
        """为主播创建新会话，返回房间密钥。

        Raises:
            KeyExhaustion: 连续 ``max_attempts`` 次生成的密钥都与现有会话冲突。
        """
        for attempt in range(1, self._max_attempts + 1):
            key = self._key_factory()
            # 检查与插入之间没有 await，在事件循环内是原子的
            if key in self._sessions:
                logger.warning("房间密钥冲突，重新生成 | attempt=%d", attempt)
                continue
            self._sessions[key] = Session(key=key, broadcaster_id=broadcaster_id)
            logger.info("会话已创建 | key=%s | broadcaster=%s", key, broadcaster_id)
            return key

        raise KeyExhaustion(f"{self._max_attempts} 次尝试后仍未生成可用的房间密钥")

    async def join_as_viewer(self, key: str, viewer_id: str) -> Session:
        """把观众加入指定会话。

        Raises:
            UnknownKey: 密钥对应的会话不存在。
            SessionClosed: 会话已关闭。
        """
        # 不存在的密钥不创建锁，也不触碰任何状态
        if key not in self._sessions:
            raise UnknownKey(f"房间 {key} 不存在")

        async with self.lock_for(key):
            session = self._sessions.get(key)
            # 等锁期间会话可能已被主播关闭
            if session is None or session.state is SessionState.CLOSED:
                raise SessionClosed(f"房间 {key} 已关闭")
            if viewer_id == session.broadcaster_id:
                raise RoleConflict(f"主播不能以观众身份加入自己的房间 {key}")

            if viewer_id not in session.viewers:
                session.viewers.add(viewer_id)
                session.negotiations[viewer_id] = NegotiationSession(
                    local_id=viewer_id,
                    remote_id=session.broadcaster_id,
                    role=NegotiationRole.ANSWERER,
                )
            session.state = SessionState.ACTIVE
            logger.info(
                "观众加入 | key=%s | viewer=%s | 观众数: %d",
                key, viewer_id, len(session.viewers),
            )
            return session

    async def leave(self, key: str, party_id: str) -> LeaveOutcome:
        """让一方离开会话。主播离开时关闭整个会话并移出所有观众。"""
        outcome = LeaveOutcome(key=key, party_id=party_id)
        if key not in self._sessions:
            return outcome

        async with self.lock_for(key):
            session = self._sessions.get(key)
            if session is None:
                return outcome
            outcome.broadcaster_id = session.broadcaster_id

            if party_id == session.broadcaster_id:
                self._close(session, reason="主播已离开")
                outcome.closed = True
                outcome.evicted = set(session.viewers)
                outcome.removed = True
                session.viewers.clear()
            elif party_id in session.viewers:
                session.viewers.discard(party_id)
                pair = session.negotiations.pop(party_id, None)
                if pair is not None:
                    pair.fail("观众已离开")
                if not session.viewers:
                    session.state = SessionState.OPEN
                outcome.removed = True
                logger.info(
                    "观众离开 | key=%s | viewer=%s | 观众数: %d",
                    key, party_id, len(session.viewers),
                )

        if outcome.closed:
            self._discard_lock(key)
        return outcome

    def lookup(self, key: str) -> Session | None:
        """只读查询会话。"""
        return self._sessions.get(key)

    def sessions(self) -> list[Session]:
        """当前所有会话的快照。"""
        return list(self._sessions.values())

    async def close_all(self) -> list[LeaveOutcome]:
        """关闭所有会话（进程关闭时调用）。"""
        outcomes = []
        for session in self.sessions():
            outcomes.append(await self.leave(session.key, session.broadcaster_id))
        return outcomes

    def _close(self, session: Session, reason: str) -> None:
        session.state = SessionState.CLOSED
        for pair in session.negotiations.values():
            pair.fail(reason)
        self._sessions.pop(session.key, None)
        logger.info(
            "会话已关闭 | key=%s | 移出观众: %d | reason=%s",
            session.key, len(session.viewers), reason,
        )

    def _discard_lock(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked() and key not in self._sessions:
            self._locks.pop(key, None)
