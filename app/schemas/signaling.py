"""
app.schemas.signaling
~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 的 Pydantic 消息模型。

所有消息都是带 ``type`` 字段的 JSON 对象。客户端 → 中继的消息通过
``parse_client_message`` 按 ``type`` 区分；中继 → 客户端的消息用
``model_dump(by_alias=True)`` 序列化（``from`` 是 Python 关键字，使用别名）。

``start_call`` / ``join_viewer`` 可携带 ``ref`` 请求标签，中继在对应的
``call_started`` / ``joined`` / ``error`` 回复里原样带回，客户端据此配对请求与回复。
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

PayloadKind = Literal["offer", "answer", "candidate"]
PAYLOAD_KINDS: frozenset[str] = frozenset({"offer", "answer", "candidate"})


# ── 客户端 → 中继 ─────────────────────────────────────────────────────

class StartCall(BaseModel):
    """主播请求新房间密钥。"""

    type: Literal["start_call"]
    ref: str | None = Field(default=None, max_length=64, description="请求标签，原样出现在回复中")


class JoinViewer(BaseModel):
    """观众出示房间密钥。"""

    type: Literal["join_viewer"]
    key: str = Field(..., min_length=1, max_length=64, description="房间密钥")
    ref: str | None = Field(default=None, max_length=64, description="请求标签，原样出现在回复中")


class Signal(BaseModel):
    """协商消息。中继只读取 ``payload.type`` 作为路由标签，其余字段原样转发。"""

    type: Literal["signal"]
    to: str | None = Field(default=None, description="接收方 party ID，为空时按默认规则路由")
    payload: dict[str, Any] = Field(..., description="offer / answer / 候选地址")

    @field_validator("payload")
    @classmethod
    def _check_payload_kind(cls, value: dict[str, Any]) -> dict[str, Any]:
        if value.get("type") not in PAYLOAD_KINDS:
            raise ValueError("payload.type 必须是 offer / answer / candidate")
        return value

    @property
    def kind(self) -> PayloadKind:
        return self.payload["type"]


class Leave(BaseModel):
    """主动离开当前会话。"""

    type: Literal["leave"]


ClientMessage = Annotated[
    Union[StartCall, JoinViewer, Signal, Leave],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(data: Any) -> StartCall | JoinViewer | Signal | Leave:
    """校验并解析客户端消息，失败时抛出 ``pydantic.ValidationError``。"""
    return _client_message_adapter.validate_python(data)


# ── 中继 → 客户端 ─────────────────────────────────────────────────────

class Hello(BaseModel):
    """连接建立后告知参与方自己的 party ID。"""

    type: Literal["hello"] = "hello"
    party_id: str


class CallStarted(BaseModel):
    type: Literal["call_started"] = "call_started"
    key: str
    ref: str | None = None


class Joined(BaseModel):
    type: Literal["joined"] = "joined"
    key: str
    broadcaster: str
    ref: str | None = None


class ForwardedSignal(BaseModel):
    """转发给接收方的协商消息。"""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["signal"] = "signal"
    sender: str = Field(..., alias="from")
    payload: dict[str, Any]


class ViewerJoined(BaseModel):
    type: Literal["viewer_joined"] = "viewer_joined"
    viewer: str


class ViewerLeft(BaseModel):
    type: Literal["viewer_left"] = "viewer_left"
    viewer: str


class SessionClosedNotice(BaseModel):
    type: Literal["session_closed"] = "session_closed"
    key: str


# ── 端点侧协商负载 ────────────────────────────────────────────────────

class SessionDescription(BaseModel):
    """会话描述（offer / answer）。"""

    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1)


class IceCandidate(BaseModel):
    """网络可达性候选地址。浏览器附带的其他字段原样保留。"""

    model_config = ConfigDict(extra="allow")

    type: Literal["candidate"] = "candidate"
    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None
