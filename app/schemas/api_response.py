"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的统一应答体。

WebSocket 信令走自己的 ``{"type": ...}`` 信封，这里只覆盖 ``/api`` 下的
HTTP 接口与全局异常处理器，保证客户端拿到的 JSON 结构一致。
"""
from __future__ import annotations
from typing import Any, Generic, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

T = TypeVar("T")

class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体::

        {"code": 200, "data": {...}, "msg": "success"}

    失败时 ``code`` 与 HTTP 状态码保持一致，``data`` 为 ``null``。
    """

    code: int = Field(default=200, description="业务状态码，与 HTTP 状态码一致")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)

    def to_response(self) -> JSONResponse:
        """包装为 ``JSONResponse``，HTTP 状态码取自 ``code``。"""
        return JSONResponse(status_code=self.code, content=self.model_dump())
