"""
tests.test_negotiation
~~~~~~~~~~~~~~~~~~~~~~

协商状态机单元测试 —— 状态流转、顺序校验、候选地址缓冲与宽限超时。
"""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from app.core.errors import OutOfOrderNegotiation
from app.services.negotiation import NegotiationPhase, NegotiationRole, NegotiationSession


def make_pair(
    role: NegotiationRole = NegotiationRole.OFFERER,
    applied: list | None = None,
    **kwargs,
) -> NegotiationSession:
    async def apply(candidate) -> None:
        if applied is not None:
            applied.append(candidate)

    return NegotiationSession("local", "remote", role, apply_candidate=apply, **kwargs)


# ── 状态流转 ──────────────────────────────────────────────────────────

class TestTransitions:
    """测试 offer / answer / established 的合法与非法流转。"""

    def test_offerer_happy_path(self) -> None:
        pair = make_pair(NegotiationRole.OFFERER)

        pair.begin_offer()
        assert pair.phase is NegotiationPhase.OFFER_SENT
        pair.receive_answer()
        assert pair.phase is NegotiationPhase.ANSWER_SENT
        pair.establish()
        assert pair.is_established
        assert pair.is_terminal

    def test_answerer_happy_path(self) -> None:
        pair = make_pair(NegotiationRole.ANSWERER)

        assert pair.receive_offer() is False
        pair.send_answer()
        pair.establish()

        assert pair.phase is NegotiationPhase.ESTABLISHED

    def test_second_offer_rejected_while_outstanding(self) -> None:
        """已有未完成的 offer 时，本端再次发起应被拒绝，直到重置。"""
        pair = make_pair(NegotiationRole.OFFERER)
        pair.begin_offer()

        with pytest.raises(OutOfOrderNegotiation):
            pair.begin_offer()

        pair.reset()
        pair.begin_offer()
        assert pair.phase is NegotiationPhase.OFFER_SENT

    def test_offer_after_established_starts_fresh_attempt(self) -> None:
        pair = make_pair(NegotiationRole.OFFERER)
        pair.begin_offer()
        pair.receive_answer()
        pair.establish()

        pair.begin_offer()

        assert pair.phase is NegotiationPhase.OFFER_SENT
        assert pair.remote_description_set is False

    def test_received_offer_while_answer_sent_renegotiates(self) -> None:
        """answer_sent 时收到第二个 offer：重置到 idle 后接受新 offer。"""
        pair = make_pair(NegotiationRole.ANSWERER)
        pair.receive_offer()
        pair.send_answer()
        assert pair.phase is NegotiationPhase.ANSWER_SENT

        renegotiated = pair.receive_offer()

        assert renegotiated is True
        assert pair.phase is NegotiationPhase.OFFER_SENT
        assert pair.pending_candidates == []

    def test_only_offerer_may_begin_offer(self) -> None:
        pair = make_pair(NegotiationRole.ANSWERER)
        with pytest.raises(OutOfOrderNegotiation):
            pair.begin_offer()

    def test_answer_without_offer_is_out_of_order(self) -> None:
        pair = make_pair(NegotiationRole.OFFERER)
        with pytest.raises(OutOfOrderNegotiation):
            pair.receive_answer()
        assert pair.phase is NegotiationPhase.IDLE

    def test_establish_requires_answer(self) -> None:
        pair = make_pair(NegotiationRole.OFFERER)
        pair.begin_offer()
        with pytest.raises(OutOfOrderNegotiation):
            pair.establish()

    def test_fail_is_idempotent_and_notifies_once(self) -> None:
        on_failed = MagicMock()
        pair = make_pair(on_failed=on_failed)

        pair.fail("transport closed")
        pair.fail("again")

        assert pair.is_failed
        assert pair.failure_reason == "transport closed"
        on_failed.assert_called_once_with(pair)

    def test_reset_after_failure_returns_to_idle(self) -> None:
        pair = make_pair()
        pair.fail("boom")

        pair.reset()

        assert pair.phase is NegotiationPhase.IDLE
        assert pair.failure_reason is None


# ── 候选地址 ──────────────────────────────────────────────────────────

class TestCandidates:
    """测试候选地址的缓冲、回放与丢弃。"""

    @pytest.mark.asyncio
    async def test_buffered_candidates_replayed_in_arrival_order(self) -> None:
        applied: list[str] = []
        pair = make_pair(NegotiationRole.OFFERER, applied)
        pair.begin_offer()

        for candidate in ("c1", "c2", "c3"):
            assert await pair.add_candidate(candidate) is True
        assert applied == []
        assert pair.pending_candidates == ["c1", "c2", "c3"]

        replayed = await pair.remote_description_applied()

        assert replayed == 3
        assert applied == ["c1", "c2", "c3"]
        assert pair.pending_candidates == []

        # 远端描述设置后立即应用
        await pair.add_candidate("c4")
        assert applied == ["c1", "c2", "c3", "c4"]

    @pytest.mark.asyncio
    async def test_candidates_after_established_applied_immediately(self) -> None:
        applied: list[str] = []
        pair = make_pair(NegotiationRole.ANSWERER, applied)
        pair.receive_offer()
        await pair.remote_description_applied()
        pair.send_answer()
        pair.establish()

        await pair.add_candidate("late")

        assert applied == ["late"]

    @pytest.mark.asyncio
    async def test_failed_pair_discards_candidates(self) -> None:
        applied: list[str] = []
        pair = make_pair(applied=applied)
        pair.fail("teardown")

        assert await pair.add_candidate("stray") is False
        assert applied == []
        assert pair.pending_candidates == []

    @pytest.mark.asyncio
    async def test_grace_period_expiry_fails_pair(self) -> None:
        """缓冲的候选地址在宽限期内等不到远端描述，协商应失败。"""
        on_failed = MagicMock()
        pair = make_pair(grace_period=0.01, on_failed=on_failed)
        pair.begin_offer()

        await pair.add_candidate("orphan")
        await asyncio.sleep(0.05)

        assert pair.is_failed
        assert pair.pending_candidates == []
        on_failed.assert_called_once_with(pair)

    @pytest.mark.asyncio
    async def test_remote_description_cancels_grace_timer(self) -> None:
        applied: list[str] = []
        pair = make_pair(applied=applied, grace_period=0.03)
        pair.begin_offer()

        await pair.add_candidate("early")
        await pair.remote_description_applied()
        await asyncio.sleep(0.06)

        assert not pair.is_failed
        assert applied == ["early"]

    @pytest.mark.asyncio
    async def test_rejected_candidate_skipped_during_replay(self) -> None:
        """回放时某个候选地址被传输层拒绝：跳过它，其余按顺序继续应用。"""
        applied: list[str] = []

        async def apply(candidate: str) -> None:
            if candidate == "bad":
                raise ValueError("传输层拒绝")
            applied.append(candidate)

        pair = NegotiationSession("local", "remote", NegotiationRole.OFFERER, apply_candidate=apply)
        pair.begin_offer()
        for candidate in ("c1", "bad", "c2"):
            await pair.add_candidate(candidate)

        await pair.remote_description_applied()
        pair.receive_answer()
        pair.establish()

        assert applied == ["c1", "c2"]
        assert pair.is_established

    @pytest.mark.asyncio
    async def test_rejected_live_candidate_keeps_pair(self) -> None:
        async def apply(candidate: str) -> None:
            raise ValueError("传输层拒绝")

        pair = NegotiationSession("local", "remote", NegotiationRole.ANSWERER, apply_candidate=apply)
        pair.receive_offer()
        await pair.remote_description_applied()

        assert await pair.add_candidate("bad") is False
        assert pair.phase is NegotiationPhase.OFFER_SENT
        assert pair.failure_reason is None
