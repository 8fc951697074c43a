"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存假对象替代 WebSocket 与媒体传输，
使单元测试可在无网络、无媒体设备的环境下快速运行。
"""
from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.schemas.signaling import IceCandidate, SessionDescription  # noqa: E402
from app.services.signaling_system import SignalingSystem  # noqa: E402


# ── WebSocket Mock ────────────────────────────────────────────────────

class RecordingWebSocket:
    """模拟 FastAPI ``WebSocket``，记录中继发出的所有 JSON 消息。"""

    def __init__(self) -> None:
        self.accepted = False
        self.sent: list[dict[str, Any]] = []
        self.fail_sends = False

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail_sends:
            raise ConnectionResetError("连接已断开")
        self.sent.append(data)

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        """返回指定类型的已发送消息。"""
        return [m for m in self.sent if m.get("type") == kind]


# ── 媒体协作方 Mock ───────────────────────────────────────────────────

class FakePeerConnection:
    """记录调用顺序的假对等连接。所有实例共享同一个调用日志。"""

    def __init__(
        self,
        remote_id: str,
        log: list[tuple[str, str, str]],
        rejected: set[str] | None = None,
    ) -> None:
        self.remote_id = remote_id
        self.log = log
        self.rejected = rejected if rejected is not None else set()
        self.local_streams: list[Any] = []
        self.local: SessionDescription | None = None
        self.remote: SessionDescription | None = None
        self.closed = False

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(type="offer", sdp=f"v=0 offer-for-{self.remote_id}")

    async def create_answer(self) -> SessionDescription:
        return SessionDescription(type="answer", sdp=f"v=0 answer-for-{self.remote_id}")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.local = description
        self.log.append((self.remote_id, "local", description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.remote = description
        self.log.append((self.remote_id, "remote", description.type))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if candidate.candidate in self.rejected:
            raise ValueError(f"传输层拒绝候选地址 {candidate.candidate}")
        self.log.append((self.remote_id, "candidate", candidate.candidate))

    def add_local_stream(self, stream: Any) -> None:
        self.local_streams.append(stream)

    def remote_stream(self) -> Any:
        if self.remote is None:
            return None
        return f"stream-from-{self.remote_id}"

    async def close(self) -> None:
        self.closed = True


class FakePeerFactory:
    """按对端 ID 创建并保存 ``FakePeerConnection``。

    ``rejected`` 中的候选地址会被所有连接拒绝（``add_ice_candidate`` 抛异常）。
    """

    def __init__(self) -> None:
        self.log: list[tuple[str, str, str]] = []
        self.rejected: set[str] = set()
        self.created: dict[str, list[FakePeerConnection]] = {}

    def __call__(self, remote_id: str) -> FakePeerConnection:
        peer = FakePeerConnection(remote_id, self.log, self.rejected)
        self.created.setdefault(remote_id, []).append(peer)
        return peer

    def last(self, remote_id: str) -> FakePeerConnection:
        return self.created[remote_id][-1]


class FakeMediaSource:
    def __init__(self) -> None:
        self.capture_count = 0

    def capture(self) -> str:
        self.capture_count += 1
        return "local-camera"


class FakeRenderSink:
    def __init__(self) -> None:
        self.attached: list[Any] = []

    def attach(self, stream: Any) -> None:
        self.attached.append(stream)


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def system() -> SignalingSystem:
    """一个独立的信令系统实例（不经过 FastAPI lifespan）。"""
    return SignalingSystem()


@pytest.fixture()
def make_websocket() -> Callable[[], RecordingWebSocket]:
    return RecordingWebSocket


@pytest.fixture()
def peer_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture()
def media_source() -> FakeMediaSource:
    return FakeMediaSource()


@pytest.fixture()
def make_render_sink() -> Callable[[], FakeRenderSink]:
    return FakeRenderSink
