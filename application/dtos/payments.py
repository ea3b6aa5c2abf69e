"""
Payment DTOs (Pydantic v2) used at application boundaries.

Two groups live here: the gateway contract payloads exchanged with provider
adapters, and the request/response models of the payment use-cases.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.types import condecimal

from domain.payment.entity import (
    LedgerEntry,
    Payment,
    PaymentStatus,
    Refund,
    RefundReason,
)


def _upper_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


# --- gateway contract ---------------------------------------------------------


class GatewayInitiateRequest(BaseModel):
    payment_id: int
    amount: Decimal
    currency: str
    order_id: str
    payment_method_id: str
    customer: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _upper_currency(v)


class GatewayInitiateResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class GatewayProcessRequest(BaseModel):
    payment_id: int
    amount: Decimal
    currency: str
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    callback_data: dict[str, Any] = Field(default_factory=dict)
    # 回调数据来自已验签的 webhook
    callback_verified: bool = False


class GatewayProcessResult(BaseModel):
    success: bool
    gateway_transaction_id: Optional[str] = None
    gateway_response: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False


class GatewayRefundRequest(BaseModel):
    payment_id: int
    refund_id: int
    amount: Decimal
    currency: str
    reason: str
    notes: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class GatewayRefundResult(BaseModel):
    success: bool
    gateway_refund_id: Optional[str] = None
    gateway_response: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False


class WebhookEvent(BaseModel):
    id: str
    type: str
    gateway_id: str
    transaction_id: Optional[str] = None
    data: dict[str, Any]
    signature: Optional[str] = None
    # raw fields for traceability (optional)
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class GatewayDescriptor(BaseModel):
    """注册表中网关的能力描述"""
    id: str
    name: str
    provider: str
    supported_currencies: list[str] = Field(default_factory=list)

    def supports(self, currency: str) -> bool:
        return not self.supported_currencies or currency.upper() in self.supported_currencies


# --- use-case requests --------------------------------------------------------


class InitiatePaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=100)
    payment_method_id: str = Field(..., min_length=1, max_length=100)
    metadata: Optional[dict[str, Any]] = None


class ProcessPaymentRequest(BaseModel):
    callback_data: dict[str, Any] = Field(default_factory=dict)


class RefundPaymentRequest(BaseModel):
    amount: condecimal(gt=0, allow_inf_nan=False)  # type: ignore[valid-type]
    reason: RefundReason
    notes: Optional[str] = Field(default=None, max_length=1000)


class ClientInfo(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# --- use-case responses -------------------------------------------------------


class InitiatePaymentResponse(BaseModel):
    payment_id: int
    transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    status: PaymentStatus


class ProcessPaymentResponse(BaseModel):
    payment_id: int
    status: PaymentStatus
    gateway_transaction_id: Optional[str] = None


class OrderSummary(BaseModel):
    id: str
    status: str


class TransactionDTO(BaseModel):
    id: int
    type: str
    amount: Decimal
    currency: str
    status: str
    gateway_transaction_id: Optional[str] = None
    refund_id: Optional[int] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, entry: LedgerEntry) -> "TransactionDTO":
        return cls(
            id=entry.id,
            type=entry.type.value,
            amount=entry.amount,
            currency=entry.currency,
            status=entry.status.value,
            gateway_transaction_id=entry.gateway_transaction_id,
            refund_id=entry.refund_id,
            processed_at=entry.processed_at,
        )


class RefundDTO(BaseModel):
    id: int
    payment_id: int
    amount: Decimal
    currency: str
    reason: RefundReason
    notes: Optional[str] = None
    status: str
    requested_by: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, refund: Refund) -> "RefundDTO":
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            amount=refund.amount,
            currency=refund.currency,
            reason=refund.reason,
            notes=refund.notes,
            status=refund.status.value,
            requested_by=refund.requested_by,
            gateway_refund_id=refund.gateway_refund_id,
            failure_reason=refund.failure_reason,
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class RefundResponse(BaseModel):
    refund_id: int
    status: str
    amount: Decimal
    currency: str
    payment_status: PaymentStatus


class PaymentStatusResponse(BaseModel):
    payment_id: int
    status: PaymentStatus
    amount: Decimal
    currency: str
    refunded_amount: Decimal
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    order: OrderSummary


class PaymentHistoryItem(BaseModel):
    id: int
    order_id: str
    gateway_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    transactions: list[TransactionDTO] = Field(default_factory=list)
    refunds: list[RefundDTO] = Field(default_factory=list)

    @classmethod
    def from_entity(
        cls,
        payment: Payment,
        transactions: list[LedgerEntry],
        refunds: list[Refund],
    ) -> "PaymentHistoryItem":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            gateway_id=payment.gateway_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            transaction_id=payment.transaction_id,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            processed_at=payment.processed_at,
            transactions=[TransactionDTO.from_entity(t) for t in transactions],
            refunds=[RefundDTO.from_entity(r) for r in refunds],
        )


class WebhookAck(BaseModel):
    event_id: str
    status: str
    payment_id: Optional[int] = None
