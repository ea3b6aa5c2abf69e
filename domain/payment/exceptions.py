"""
支付领域异常

``error_type`` 即对外暴露的错误名，冲突类异常在 ``details`` 中携带当前状态。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""
    def __init__(self, payment_id):
        super().__init__(
            code=BusinessCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {payment_id}",
            error_type="NotFound",
            details={"payment_id": payment_id},
        )


class RefundNotFoundException(BusinessException):
    def __init__(self, refund_id):
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"Refund not found: {refund_id}",
            error_type="NotFound",
            details={"refund_id": refund_id},
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message=f"Order not found: {order_id}",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class PaymentMethodNotFoundException(BusinessException):
    def __init__(self, payment_method_id: str):
        super().__init__(
            code=BusinessCode.PAYMENT_METHOD_NOT_FOUND,
            message=f"Payment method not found: {payment_method_id}",
            error_type="MethodNotFound",
            details={"payment_method_id": payment_method_id},
        )


class GatewayNotFoundException(BusinessException):
    """注册表中不存在该网关"""
    def __init__(self, gateway_id: str):
        super().__init__(
            code=BusinessCode.GATEWAY_NOT_FOUND,
            message=f"Gateway not registered: {gateway_id}",
            error_type="GatewayNotFound",
            details={"gateway_id": gateway_id},
        )


class GatewayUnavailableException(BusinessException):
    def __init__(self, gateway_id: str, reason: str = "Gateway is not available"):
        super().__init__(
            code=BusinessCode.GATEWAY_UNAVAILABLE,
            message=reason,
            error_type="GatewayUnavailable",
            details={"gateway_id": gateway_id},
        )


class PaymentAlreadyExistsException(BusinessException):
    """订单已存在进行中或已完成的支付"""
    def __init__(
        self,
        order_id: str,
        payment_id: Optional[int] = None,
        status: Optional[str] = None,
    ):
        details = {"order_id": order_id}
        if payment_id is not None:
            details["payment_id"] = payment_id
        if status is not None:
            details["status"] = status
        super().__init__(
            code=BusinessCode.PAYMENT_ALREADY_EXISTS,
            message=f"Order {order_id} already has an active payment",
            error_type="AlreadyPaid",
            details=details,
        )


class PaymentAlreadyCompletedException(BusinessException):
    def __init__(self, payment_id: int, status: str):
        super().__init__(
            code=BusinessCode.PAYMENT_ALREADY_COMPLETED,
            message=f"Payment {payment_id} is already {status}",
            error_type="AlreadyCompleted",
            details={"payment_id": payment_id, "status": status},
        )


class PaymentInvalidStateException(BusinessException):
    def __init__(self, payment_id: int, status: str):
        super().__init__(
            code=BusinessCode.PAYMENT_INVALID_STATE,
            message=f"Payment {payment_id} is {status} and cannot be processed",
            error_type="InvalidState",
            details={"payment_id": payment_id, "status": status},
        )


class PaymentNotRefundableException(BusinessException):
    """支付未完成，不可退款"""
    def __init__(self, payment_id: int, status: str):
        super().__init__(
            code=BusinessCode.PAYMENT_NOT_REFUNDABLE,
            message=f"Payment {payment_id} is {status}; only completed payments can be refunded",
            error_type="NotCompleted",
            details={"payment_id": payment_id, "status": status},
        )


class RefundExceedsBalanceException(BusinessException):
    """退款金额超过可退余额"""
    def __init__(
        self,
        payment_id: int,
        requested: Decimal,
        available: Decimal,
        refunded: Decimal,
        reserved: Decimal,
    ):
        super().__init__(
            code=BusinessCode.REFUND_EXCEEDS_BALANCE,
            message=f"Refund amount {requested} exceeds refundable balance {available}",
            error_type="ExceedsBalance",
            details={
                "payment_id": payment_id,
                "requested": str(requested),
                "available": str(available),
                "refunded": str(refunded),
                "pending": str(reserved),
            },
            field="amount",
        )


class PaymentConcurrentUpdateException(BusinessException):
    """支付在读取后被其他请求修改（状态比较写失败）"""
    def __init__(self, payment_id: int, expected_status: str):
        super().__init__(
            code=BusinessCode.PAYMENT_CONCURRENT_UPDATE,
            message=f"Payment {payment_id} was modified concurrently",
            error_type="ConcurrentUpdate",
            details={"payment_id": payment_id, "expected_status": expected_status},
        )


class GatewayRejectedException(BusinessException):
    """网关拒绝或不可达，结果已持久化"""
    def __init__(
        self,
        gateway_id: str,
        reason: Optional[str],
        *,
        retryable: bool = False,
        payment_id: Optional[int] = None,
        refund_id: Optional[int] = None,
    ):
        details = {"gateway_id": gateway_id, "retryable": retryable}
        if payment_id is not None:
            details["payment_id"] = payment_id
        if refund_id is not None:
            details["refund_id"] = refund_id
        super().__init__(
            code=BusinessCode.GATEWAY_REJECTED,
            message=reason or "Payment gateway rejected the request",
            error_type="GatewayRejected",
            details=details,
        )
        self.retryable = retryable


class WebhookSignatureException(BusinessException):
    def __init__(self, gateway_id: str, reason: str = "Invalid webhook signature"):
        super().__init__(
            code=BusinessCode.WEBHOOK_SIGNATURE_INVALID,
            message=reason,
            error_type="InvalidSignature",
            details={"gateway_id": gateway_id},
        )
