"""看板 API 响应封装（提供商 / 缓存管理接口及错误响应）"""

from typing import Any, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """success / data / message / error 四字段响应"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)

    def to_json(self, status_code: int = 200) -> JSONResponse:
        """带状态码返回；看板前端只读取 error 字段"""
        return JSONResponse(status_code=status_code, content=self.model_dump(exclude_none=True))
