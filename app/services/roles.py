"""
app.services.roles
~~~~~~~~~~~~~~~~~~

角色协调器 —— 决定每个连接是主播（创建密钥）还是观众（出示已有密钥），
并把它绑定到正确的会话。

一个连接同一时间只能担任一个角色。
"""
from __future__ import annotations

from dataclasses import dataclass

from app.core.errors import RoleConflict
from app.core.logging import get_logger
from app.services.connection import Role
from app.services.registry import LeaveOutcome, SessionRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """参与方与会话的绑定关系。"""

    key: str
    party_id: str
    role: Role
    broadcaster_id: str


class RoleCoordinator:
    """角色协调器。

    Attributes:
        registry: 会话注册表。
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self._bindings: dict[str, SessionHandle] = {}

    def binding(self, party_id: str) -> SessionHandle | None:
        """查询参与方当前的绑定。"""
        return self._bindings.get(party_id)

    async def start_broadcast(self, party_id: str) -> str:
        """以主播身份创建新会话，返回房间密钥。

        Raises:
            RoleConflict: 该连接已经绑定了某个会话。
            KeyExhaustion: 无法生成可用的房间密钥。
        """
        self._ensure_unbound(party_id)
        key = await self.registry.create_session(party_id)
        self._bindings[party_id] = SessionHandle(
            key=key, party_id=party_id, role=Role.BROADCASTER, broadcaster_id=party_id,
        )
        return key

    async def join_viewer(self, party_id: str, key: str) -> SessionHandle:
        """以观众身份加入指定会话。

        Raises:
            RoleConflict: 该连接已经绑定了某个会话。
            UnknownKey: 密钥不存在。
            SessionClosed: 会话已关闭。
        """
        self._ensure_unbound(party_id)
        session = await self.registry.join_as_viewer(key, party_id)
        handle = SessionHandle(
            key=key, party_id=party_id, role=Role.VIEWER,
            broadcaster_id=session.broadcaster_id,
        )
        self._bindings[party_id] = handle
        return handle

    async def release(self, party_id: str) -> LeaveOutcome | None:
        """解除参与方的绑定并离开会话（主动离开或断线）。

        主播离开会关闭会话，被移出的观众同时解除绑定，之后可以重新加入。

        Returns:
            离开结果；该连接没有绑定任何会话时返回 ``None``。
        """
        handle = self._bindings.pop(party_id, None)
        if handle is None:
            return None

        outcome = await self.registry.leave(handle.key, party_id)
        for viewer_id in outcome.evicted:
            self._bindings.pop(viewer_id, None)
        logger.debug(
            "解除绑定 | party=%s | role=%s | key=%s",
            party_id, handle.role.value, handle.key,
        )
        return outcome

    def _ensure_unbound(self, party_id: str) -> None:
        handle = self._bindings.get(party_id)
        if handle is not None:
            raise RoleConflict(
                f"连接已作为 {handle.role.value} 绑定到房间 {handle.key}",
            )
