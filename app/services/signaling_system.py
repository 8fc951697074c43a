"""
app.services.signaling_system
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令系统 —— 每个进程一个实例，持有会话注册表、角色协调器与中继。

在 FastAPI lifespan 中创建并调用 ``start()`` / ``shutdown()``，
挂载于 ``app.state.signaling_system``，不使用模块级单例。
"""
from __future__ import annotations

from fastapi import WebSocket

from app.core.errors import PartyNotInSession, SignalingError
from app.core.logging import get_logger
from app.schemas.signaling import (
    CallStarted,
    Hello,
    Joined,
    JoinViewer,
    Leave,
    SessionClosedNotice,
    Signal,
    StartCall,
)
from app.services.connection import PartyConnection, Role
from app.services.registry import SessionRegistry
from app.services.relay import SignalingRelay
from app.services.roles import RoleCoordinator

logger = get_logger(__name__)


class SignalingSystem:
    """信令系统（每进程一个）。

    - ``connect(websocket)``          → 接受连接并分配 party ID
    - ``handle(connection, message)`` → 处理一条已校验的客户端消息
    - ``disconnect(connection)``      → 断线清理（主播断线即关闭会话）

    Attributes:
        registry: 会话注册表。
        roles: 角色协调器。
        relay: 信令中继。
    """

    def __init__(self, registry: SessionRegistry | None = None) -> None:
        self.registry: SessionRegistry = registry or SessionRegistry()
        self.roles: RoleCoordinator = RoleCoordinator(self.registry)
        self.relay: SignalingRelay = SignalingRelay(self.registry)
        self.started: bool = False

    async def start(self) -> None:
        self.started = True
        logger.info("信令系统已启动")

    async def shutdown(self) -> None:
        """关闭所有会话并通知所有成员。"""
        outcomes = []
        for session in self.registry.sessions():
            outcome = await self.roles.release(session.broadcaster_id)
            if outcome is not None:
                outcomes.append(outcome)
        # 没有绑定记录的残留会话直接关闭
        outcomes.extend(await self.registry.close_all())

        for outcome in outcomes:
            await self.relay.handle_departure(outcome, notify_leaver=True)
        self.started = False
        logger.info("信令系统已关闭 | 关闭会话: %d", len(outcomes))

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket) -> PartyConnection:
        """接受新连接，登记到中继并告知其 party ID。"""
        await websocket.accept()
        connection = PartyConnection(websocket)
        self.relay.register(connection)
        await connection.send(Hello(party_id=connection.party_id).model_dump())
        return connection

    async def disconnect(self, connection: PartyConnection) -> None:
        """连接断开：离开会话，通知对端，从中继注销。"""
        self.relay.unregister(connection.party_id)
        outcome = await self.roles.release(connection.party_id)
        connection.unbind()
        if outcome is not None:
            await self.relay.handle_departure(outcome)

    # ── 消息处理 ──────────────────────────────────────────────────────

    async def handle(
        self,
        connection: PartyConnection,
        message: StartCall | JoinViewer | Signal | Leave,
    ) -> None:
        """处理一条客户端消息。

        可恢复的信令错误以 ``error`` 消息同步回复给发送方，不会向上抛出。
        """
        try:
            if isinstance(message, StartCall):
                await self._start_call(connection, message.ref)
            elif isinstance(message, JoinViewer):
                await self._join_viewer(connection, message.key, message.ref)
            elif isinstance(message, Signal):
                if connection.key is None:
                    raise PartyNotInSession("尚未加入任何会话")
                await self.relay.route(connection.party_id, connection.key, message)
            elif isinstance(message, Leave):
                await self._leave(connection)
        except SignalingError as e:
            logger.info("信令错误 | kind=%s | detail=%s", e.kind, e.detail)
            await connection.send(e.to_message(ref=getattr(message, "ref", None)))

    async def _start_call(self, connection: PartyConnection, ref: str | None = None) -> None:
        key = await self.roles.start_broadcast(connection.party_id)
        connection.bind(Role.BROADCASTER, key)
        await connection.send(CallStarted(key=key, ref=ref).model_dump(exclude_none=True))

    async def _join_viewer(
        self, connection: PartyConnection, key: str, ref: str | None = None,
    ) -> None:
        handle = await self.roles.join_viewer(connection.party_id, key)
        connection.bind(Role.VIEWER, key)
        await connection.send(
            Joined(key=key, broadcaster=handle.broadcaster_id, ref=ref).model_dump(exclude_none=True),
        )
        await self.relay.notify_viewer_joined(handle)

    async def _leave(self, connection: PartyConnection) -> None:
        key = connection.key
        outcome = await self.roles.release(connection.party_id)
        connection.unbind()
        if outcome is None:
            return
        await self.relay.handle_departure(outcome)
        if outcome.closed and key is not None:
            # 主播主动结束通话，也给它自己一个确认
            await connection.send(SessionClosedNotice(key=key).model_dump())

    def info(self) -> dict:
        """返回系统摘要信息。"""
        return {
            "sessions": len(self.registry),
            "connections": self.relay.online_count,
        }
