"""
app.core.errors
~~~~~~~~~~~~~~~

信令核心的错误分类。

每个错误带一个稳定的 ``kind`` 字符串，WebSocket 层用它构造
``{"type": "error", "kind": ..., "detail": ...}`` 回复给触发请求的一方。
主播断线不是错误，而是会话的正常终止（``session_closed`` 通知）。
"""
from __future__ import annotations

from typing import Any


class SignalingError(Exception):
    """信令错误基类。

    Attributes:
        kind: 对外暴露的错误类别。
        detail: 人类可读的说明。
    """

    kind: str = "SignalingError"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_message(self, ref: str | None = None) -> dict[str, Any]:
        """渲染为发给客户端的错误信封。

        Args:
            ref: 触发错误的请求标签，有则原样带回。
        """
        message: dict[str, Any] = {"type": "error", "kind": self.kind, "detail": self.detail}
        if ref is not None:
            message["ref"] = ref
        return message


class UnknownKey(SignalingError):
    """房间密钥不存在。"""

    kind = "UnknownKey"


class SessionClosed(SignalingError):
    """会话已关闭。"""

    kind = "SessionClosed"


class PartyNotInSession(SignalingError):
    """发送方（或指定的接收方）不是该会话的成员。"""

    kind = "PartyNotInSession"


class KeyExhaustion(SignalingError):
    """重试次数耗尽仍未生成不冲突的房间密钥。"""

    kind = "KeyExhaustion"


class OutOfOrderNegotiation(SignalingError):
    """协商消息顺序不合法。"""

    kind = "OutOfOrderNegotiation"


class MalformedPayload(SignalingError):
    """信封或协商负载格式错误。"""

    kind = "MalformedPayload"


class NegotiationFailed(SignalingError):
    """协商失败（超时、拆除等）。"""

    kind = "NegotiationFailed"


class RoleConflict(SignalingError):
    """同一连接试图同时担任两个角色。"""

    kind = "RoleConflict"


ERRORS_BY_KIND: dict[str, type[SignalingError]] = {
    cls.kind: cls
    for cls in (
        UnknownKey,
        SessionClosed,
        PartyNotInSession,
        KeyExhaustion,
        OutOfOrderNegotiation,
        MalformedPayload,
        NegotiationFailed,
        RoleConflict,
    )
}


def error_from_message(message: dict[str, Any]) -> SignalingError:
    """把中继回复的错误信封还原为异常（客户端使用）。"""
    kind = str(message.get("kind", SignalingError.kind))
    error = ERRORS_BY_KIND.get(kind, SignalingError)(str(message.get("detail", "")))
    error.kind = kind
    return error
