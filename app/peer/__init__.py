"""
app.peer
~~~~~~~~

端点侧信令库 —— 在每个参与方本地运行协商状态机，
通过 ``SignalingClient`` 连接到中继。
"""
from app.peer.client import SignalingClient
from app.peer.endpoint import PeerEndpoint
from app.peer.media import MediaSource, MediaStreamHandle, PeerConnection, RenderSink

__all__ = [
    "MediaSource",
    "MediaStreamHandle",
    "PeerConnection",
    "PeerEndpoint",
    "RenderSink",
    "SignalingClient",
]
