"""
统一响应格式

所有接口（含错误）返回同一个信封：``{code, message, data, error}``。
金额字段由各 DTO 自行序列化为字符串，这里不做处理。
"""
import math
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode


T = TypeVar("T")


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ErrorDetail(BaseModel):
    """错误详情；冲突类错误在 details 中携带当前状态（如 payment_status、available）"""
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return _utc_iso(timestamp)


class Response(BaseModel, Generic[T]):
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


class PaginatedData(BaseModel, Generic[T]):
    """分页数据（支付历史）"""
    items: list[T]
    total: int
    page: int
    size: int
    pages: int

    @classmethod
    def build(cls, items: list, total: int, page: int, size: int) -> "PaginatedData":
        pages = math.ceil(total / size) if size > 0 else 0
        return cls(items=items, total=total, page=page, size=size, pages=pages)


def success_response(
    data: Any = None,
    message: str = "Success",
    code: int = BusinessCode.SUCCESS,
) -> Response:
    return Response(code=code, message=message, data=data)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    创建错误响应

    Args:
        code: 业务状态码（见 shared.codes.BusinessCode）
        message: 面向调用方的错误信息
        error_type: 边界错误名，例如 ExceedsBalance、GatewayRejected
        details: 附加上下文
        field: 出错字段（校验错误时）
        request_id: 当前请求ID
    """
    return Response(
        code=code,
        message=message,
        error=ErrorDetail(type=error_type, details=details, field=field, request_id=request_id),
    )


def paginated_response(
    items: list,
    total: int,
    page: int,
    size: int,
    message: str = "Success",
) -> Response[PaginatedData]:
    return Response(
        code=BusinessCode.SUCCESS,
        message=message,
        data=PaginatedData.build(items, total, page, size),
    )
