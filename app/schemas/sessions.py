"""
app.schemas.sessions
~~~~~~~~~~~~~~~~~~~~

会话状态 REST 接口的 Pydantic 响应模型。
"""
from __future__ import annotations

from pydantic import BaseModel, Field

from app.services.registry import Session, SessionState


class SessionInfoData(BaseModel):
    """会话摘要信息。"""

    key: str = Field(..., description="房间密钥")
    state: SessionState = Field(..., description="会话状态：open / active / closed")
    viewer_count: int = Field(..., description="当前观众数")
    created_at: str = Field(..., description="创建时间（ISO 格式）")

    @classmethod
    def from_session(cls, session: Session) -> SessionInfoData:
        return cls(
            key=session.key,
            state=session.state,
            viewer_count=len(session.viewers),
            created_at=session.created_at.isoformat(),
        )
