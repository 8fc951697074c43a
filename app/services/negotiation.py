"""
app.services.negotiation
~~~~~~~~~~~~~~~~~~~~~~~~

协商状态机 —— 每个（主播, 观众）对一个实例，驱动 offer / answer / 候选地址
交换直到建立或失败。

状态流转::

    idle ──offer──▶ offer_sent ──answer──▶ answer_sent ──▶ established
      ▲                                                        │
      └──────────────── reset（重新协商 / 新一轮尝试）◀─────────┘
    任意状态 ──fail──▶ failed

同一个类在两处使用：

- 中继侧只根据消息标签推进状态（用于路由与拆除），不关心负载内容；
- 端点侧（``app.peer.endpoint``）完整运行，负责候选地址的缓冲与回放。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from app.core.errors import OutOfOrderNegotiation
from app.core.logging import get_logger
from app.core.settings import settings

logger = get_logger(__name__)


class NegotiationPhase(str, Enum):
    """协商阶段。"""

    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    ANSWER_SENT = "answer_sent"
    ESTABLISHED = "established"
    FAILED = "failed"


class NegotiationRole(str, Enum):
    """本端在协商中的角色。主播永远是 offerer。"""

    OFFERER = "offerer"
    ANSWERER = "answerer"


CandidateApplier = Callable[[Any], Awaitable[None]]
FailureCallback = Callable[["NegotiationSession"], None]


class NegotiationSession:
    """一对参与者之间的一次（或多次重新）协商。

    Attributes:
        local_id: 本端 party ID。
        remote_id: 对端 party ID。
        role: 本端角色。
        phase: 当前阶段。
        pending_candidates: 远端描述设置前收到的候选地址（按到达顺序）。
        remote_description_set: 远端描述是否已设置。
        failure_reason: 进入 ``failed`` 的原因。
        lock: 串行化本对消息处理的锁，不同的对之间互不阻塞。
    """

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        role: NegotiationRole,
        *,
        apply_candidate: CandidateApplier | None = None,
        grace_period: float | None = None,
        on_failed: FailureCallback | None = None,
    ) -> None:
        self.local_id = local_id
        self.remote_id = remote_id
        self.role = role
        self.phase: NegotiationPhase = NegotiationPhase.IDLE
        self.pending_candidates: list[Any] = []
        self.remote_description_set: bool = False
        self.failure_reason: str | None = None
        self.lock = asyncio.Lock()

        self._apply_candidate = apply_candidate
        self._grace_period: float = (
            grace_period if grace_period is not None else settings.CANDIDATE_GRACE_SECONDS
        )
        self._on_failed = on_failed
        self._grace_timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        return (
            f"NegotiationSession({self.local_id!r}->{self.remote_id!r}, "
            f"role={self.role.value}, phase={self.phase.value})"
        )

    # ── 状态查询 ──────────────────────────────────────────────────────

    @property
    def is_established(self) -> bool:
        return self.phase is NegotiationPhase.ESTABLISHED

    @property
    def is_failed(self) -> bool:
        return self.phase is NegotiationPhase.FAILED

    @property
    def is_terminal(self) -> bool:
        """``established`` 与 ``failed`` 对本轮尝试而言都是终态。"""
        return self.phase in (NegotiationPhase.ESTABLISHED, NegotiationPhase.FAILED)

    # ── 描述交换 ──────────────────────────────────────────────────────

    def begin_offer(self) -> None:
        """本端（offerer）发出 offer。

        已有未完成的 offer 时拒绝；从终态出发则开启新一轮尝试。

        Raises:
            OutOfOrderNegotiation: 本端不是 offerer，或已有未完成的 offer。
        """
        if self.role is not NegotiationRole.OFFERER:
            raise OutOfOrderNegotiation("只有主播可以发起 offer")
        if self.phase in (NegotiationPhase.OFFER_SENT, NegotiationPhase.ANSWER_SENT):
            raise OutOfOrderNegotiation(
                f"已有未完成的 offer（phase={self.phase.value}），请先重置",
            )
        if self.phase is not NegotiationPhase.IDLE:
            self.reset()
        self._transition(NegotiationPhase.OFFER_SENT)

    def receive_offer(self) -> bool:
        """本端（answerer）收到 offer。

        非 ``idle`` 状态下收到 offer 视为重新协商：先重置到 ``idle`` 再重放。

        Returns:
            是否发生了重新协商的重置。

        Raises:
            OutOfOrderNegotiation: 本端不是 answerer。
        """
        if self.role is not NegotiationRole.ANSWERER:
            raise OutOfOrderNegotiation("offerer 不接受 offer")
        renegotiated = self.phase is not NegotiationPhase.IDLE
        if renegotiated:
            logger.info("重新协商，重置协商对 | %s", self)
            self.reset()
        self._transition(NegotiationPhase.OFFER_SENT)
        return renegotiated

    def send_answer(self) -> None:
        """本端（answerer）发出 answer。"""
        self._require(NegotiationRole.ANSWERER, NegotiationPhase.OFFER_SENT, "answer")
        self._transition(NegotiationPhase.ANSWER_SENT)

    def receive_answer(self) -> None:
        """本端（offerer）收到 answer。"""
        self._require(NegotiationRole.OFFERER, NegotiationPhase.OFFER_SENT, "answer")
        self._transition(NegotiationPhase.ANSWER_SENT)

    def establish(self) -> None:
        """offerer 已消费匹配的 answer，协商完成。"""
        if self.phase is not NegotiationPhase.ANSWER_SENT:
            raise OutOfOrderNegotiation(
                f"无法在 phase={self.phase.value} 时完成协商",
            )
        self._transition(NegotiationPhase.ESTABLISHED)

    # ── 候选地址 ──────────────────────────────────────────────────────

    async def remote_description_applied(self) -> int:
        """标记远端描述已设置，并按到达顺序回放缓冲的候选地址。

        Returns:
            回放的候选地址数量。
        """
        self.remote_description_set = True
        self._cancel_grace_timer()

        buffered, self.pending_candidates = self.pending_candidates, []
        # 单个候选地址被拒绝只跳过它本身，其余按原顺序继续回放
        for candidate in buffered:
            await self._apply(candidate)
        if buffered:
            logger.debug("回放 %d 个缓冲的候选地址 | %s", len(buffered), self)
        return len(buffered)

    async def add_candidate(self, candidate: Any) -> bool:
        """处理一个收到的候选地址。

        - ``failed``：丢弃并记录警告；
        - 远端描述未设置：缓冲，并启动宽限计时；
        - 其余情况（包括 ``established`` 之后）：立即应用；传输层拒绝时
          丢弃并记录警告，协商对不受影响。

        Returns:
            候选地址是否被接受（缓冲或成功应用）。
        """
        if self.phase is NegotiationPhase.FAILED:
            logger.warning("协商已失败，丢弃候选地址 | %s", self)
            return False

        if not self.remote_description_set:
            self.pending_candidates.append(candidate)
            self._start_grace_timer()
            return True

        return await self._apply(candidate)

    # ── 失败与重置 ────────────────────────────────────────────────────

    def fail(self, reason: str) -> None:
        """进入 ``failed``，清空缓冲并通知观察者。重复调用无副作用。"""
        if self.phase is NegotiationPhase.FAILED:
            return
        self._cancel_grace_timer()
        self.pending_candidates.clear()
        self.failure_reason = reason
        self._transition(NegotiationPhase.FAILED)
        logger.warning("协商失败 | %s | reason=%s", self, reason)
        if self._on_failed is not None:
            self._on_failed(self)

    def reset(self) -> None:
        """回到 ``idle``，开始新一轮尝试。"""
        self._cancel_grace_timer()
        self.pending_candidates.clear()
        self.remote_description_set = False
        self.failure_reason = None
        self._transition(NegotiationPhase.IDLE)

    # ── 内部 ──────────────────────────────────────────────────────────

    def _require(self, role: NegotiationRole, phase: NegotiationPhase, message: str) -> None:
        if self.role is not role or self.phase is not phase:
            raise OutOfOrderNegotiation(
                f"{self.role.value} 在 phase={self.phase.value} 时不能处理 {message}",
            )

    def _transition(self, phase: NegotiationPhase) -> None:
        if phase is not self.phase:
            logger.debug("协商状态 %s -> %s | %s", self.phase.value, phase.value, self.remote_id)
        self.phase = phase

    async def _apply(self, candidate: Any) -> bool:
        if self._apply_candidate is None:
            return True
        try:
            await self._apply_candidate(candidate)
        except Exception as e:
            logger.warning("候选地址被拒绝，已丢弃 | %s | error=%s", self, e, exc_info=True)
            return False
        return True

    def _start_grace_timer(self) -> None:
        if self._grace_timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._grace_timer = loop.call_later(self._grace_period, self._on_grace_expired)

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _on_grace_expired(self) -> None:
        self._grace_timer = None
        if not self.remote_description_set and self.pending_candidates:
            self.fail(
                f"{self._grace_period:g}s 内未收到远端描述，"
                f"{len(self.pending_candidates)} 个候选地址无法应用",
            )
