"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类

    ``error_type`` 是对外暴露的错误名（如 ``ExceedsBalance``），
    ``details`` 携带调用方做决策所需的当前状态。
    """

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        error_type: str = "DomainValidationError",
        code: int = BusinessCode.PARAM_VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
            field=field,
        )


class InvalidAmountException(DomainValidationException):
    def __init__(self, message: str, *, amount=None, currency: Optional[str] = None):
        details = {}
        if amount is not None:
            details["amount"] = str(amount)
        if currency is not None:
            details["currency"] = currency
        super().__init__(
            message,
            field="amount",
            details=details or None,
            error_type="InvalidAmount",
            code=BusinessCode.INVALID_AMOUNT,
        )


class UnauthorizedException(BusinessException):
    def __init__(self, message: str = "Not authorized for this resource", details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.UNAUTHORIZED,
            message=message,
            error_type="Unauthorized",
            details=details,
        )


class LockTimeoutException(BusinessException):
    def __init__(self, key: str):
        super().__init__(
            code=BusinessCode.LOCK_TIMEOUT,
            message="Resource is busy, retry later",
            error_type="LockTimeout",
            details={"lock": key},
        )
