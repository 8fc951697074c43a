"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

参与方连接 —— 包装一个 WebSocket，携带 party ID 与角色。

中继只通过 ``PartyConnection.send`` 向参与方投递消息，不直接接触 WebSocket。
"""
from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """参与方角色，在 ``start_broadcast`` / ``join_viewer`` 时确定一次。"""

    BROADCASTER = "broadcaster"
    VIEWER = "viewer"


def new_party_id() -> str:
    """生成连接级的 party ID（不跨重连持久化）。"""
    return uuid.uuid4().hex


class PartyConnection:
    """一个已连接的参与方。

    Attributes:
        party_id: 参与方唯一标识，仅在本连接生命周期内有效。
        websocket: 底层 WebSocket 连接。
        role: 当前角色，未绑定会话时为 ``None``。
        key: 当前所在的房间密钥。
    """

    def __init__(self, websocket: WebSocket, party_id: str | None = None) -> None:
        self.party_id: str = party_id or new_party_id()
        self.websocket = websocket
        self.role: Role | None = None
        self.key: str | None = None
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        role = self.role.value if self.role else None
        return f"PartyConnection({self.party_id!r}, role={role}, key={self.key!r})"

    def bind(self, role: Role, key: str) -> None:
        self.role = role
        self.key = key

    def unbind(self) -> None:
        self.role = None
        self.key = None

    async def send(self, message: dict[str, Any]) -> None:
        """按调用顺序向参与方发送一条 JSON 消息。"""
        async with self._send_lock:
            await self.websocket.send_json(message)
