"""
app.peer.media
~~~~~~~~~~~~~~

外部协作方接口。

采集 / 渲染 / 传输都由平台实现，信令核心只需要知道“有一个本地媒体源”、
“有一个渲染目标”以及一个能交换会话描述和候选地址的对等连接。
静音与语音转写不在这里出现：它们独立观察本地媒体状态。
"""
from __future__ import annotations

from typing import Any, Protocol

from app.schemas.signaling import IceCandidate, SessionDescription

MediaStreamHandle = Any
"""对核心不透明的媒体流句柄。"""


class MediaSource(Protocol):
    """本地媒体源（摄像头 + 麦克风）。"""

    def capture(self) -> MediaStreamHandle: ...


class RenderSink(Protocol):
    """远端媒体的渲染目标。协商建立后由核心调用。"""

    def attach(self, stream: MediaStreamHandle) -> None: ...


class PeerConnection(Protocol):
    """与一个对端之间的媒体传输连接。"""

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    def add_local_stream(self, stream: MediaStreamHandle) -> None: ...

    def remote_stream(self) -> MediaStreamHandle | None: ...

    async def close(self) -> None: ...
