"""
支付领域实体 - 支付聚合根、退款与账本条目
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException
from .money import normalize_amount


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"           # 待处理
    PROCESSING = "processing"     # 处理中
    COMPLETED = "completed"       # 已完成
    FAILED = "failed"             # 失败（终态）
    REFUNDED = "refunded"         # 已全额退款（终态）


# 允许的状态迁移
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED}
    ),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# 占用订单的支付状态（同一订单同一时刻最多一笔）
ACTIVE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED}
)


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(str, Enum):
    """退款原因"""
    CUSTOMER_REQUEST = "customer_request"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    SERVICE_ISSUE = "service_issue"


class TransactionType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _validate_currency(currency: str) -> str:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise DomainValidationException(
            f"无效的货币代码: {currency}",
            field="currency"
        )
    return currency.upper()


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 同一订单同一时刻最多一笔非失败支付
    2. 金额必须大于0，且创建后不可修改
    3. 状态转换必须遵循状态机（failed / refunded 为终态）
    4. 只有已完成的支付才能退款
    """

    id: Optional[int]
    order_id: str
    payment_method_id: str
    gateway_id: str
    amount: Decimal
    currency: str  # ISO-4217
    status: PaymentStatus
    payer_id: Optional[str] = None

    # 渠道标识
    transaction_id: Optional[str] = None            # 发起时网关返回的交易号
    gateway_transaction_id: Optional[str] = None    # 网关侧交易号

    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    # 时间戳
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        self.currency = _validate_currency(self.currency)
        object.__setattr__(self, "amount", normalize_amount(self.amount, self.currency))
        self.status = PaymentStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.processed_at = _ensure_utc(self.processed_at)
        if self.metadata is None:
            self.metadata = {}

    def __setattr__(self, name: str, value: Any) -> None:
        # 业务规则：金额创建后不可变
        if name == "amount" and "amount" in self.__dict__:
            raise DomainValidationException("支付金额创建后不可修改", field="amount")
        super().__setattr__(name, value)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PAYMENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not PAYMENT_TRANSITIONS[self.status]

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in PAYMENT_TRANSITIONS[self.status]

    def _transition(self, target: PaymentStatus) -> None:
        if not self.can_transition_to(target):
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 {target.value}",
                field="status",
                details={"status": self.status.value, "target": target.value},
            )
        self.status = target
        self.updated_at = datetime.now(timezone.utc)

    def attach_provider_refs(
        self,
        transaction_id: Optional[str],
        gateway_transaction_id: Optional[str] = None,
    ) -> None:
        """记录网关返回的标识"""
        if transaction_id:
            self.transaction_id = transaction_id
        if gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        self.updated_at = datetime.now(timezone.utc)

    def mark_processing(self) -> None:
        """标记为处理中（已处于 processing 时保持不变，允许重试）"""
        if self.status == PaymentStatus.PROCESSING:
            return
        self._transition(PaymentStatus.PROCESSING)

    def mark_completed(self, gateway_transaction_id: Optional[str] = None) -> None:
        """
        标记支付完成

        业务规则：只能从 pending 或 processing 转为 completed
        """
        self._transition(PaymentStatus.COMPLETED)
        if gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        self.processed_at = self.updated_at
        self.failure_reason = None

    def mark_failed(self, reason: Optional[str] = None) -> None:
        """
        标记支付失败

        业务规则：只能从 pending 或 processing 转为 failed，失败后不可恢复
        """
        self._transition(PaymentStatus.FAILED)
        self.failure_reason = reason
        self.processed_at = self.updated_at

    def record_retryable_failure(self, reason: Optional[str]) -> None:
        """可重试的网关错误：保持 pending/processing，仅记录原因"""
        if self.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise DomainValidationException(
                f"状态 {self.status.value} 不允许重试",
                field="status",
            )
        self.failure_reason = reason
        self.updated_at = datetime.now(timezone.utc)

    def mark_refunded(self) -> None:
        """全额退款后转为 refunded"""
        self._transition(PaymentStatus.REFUNDED)

    def update_metadata(self, key: str, value: Any) -> None:
        """更新元数据"""
        if self.metadata is None:
            self.metadata = {}
        self.metadata[key] = value
        self.updated_at = datetime.now(timezone.utc)


@dataclass
class Refund:
    """
    退款实体 - Payment 聚合的一部分

    业务规则：
    1. 同一笔支付可以多次部分退款
    2. 已完成退款总额不能超过支付金额
    3. 终态（completed / failed）后不可再修改
    """

    id: Optional[int]
    payment_id: int
    order_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: RefundReason
    notes: Optional[str] = None
    requested_by: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        self.currency = _validate_currency(self.currency)
        self.amount = normalize_amount(self.amount, self.currency)
        self.status = RefundStatus(self.status)
        self.reason = RefundReason(self.reason)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.processed_at = _ensure_utc(self.processed_at)

    @property
    def is_terminal(self) -> bool:
        return self.status != RefundStatus.PENDING

    def _ensure_pending(self, target: RefundStatus) -> None:
        if self.is_terminal:
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 {target.value}",
                field="status"
            )

    def mark_completed(self, gateway_refund_id: Optional[str] = None) -> None:
        """标记退款成功"""
        self._ensure_pending(RefundStatus.COMPLETED)
        self.status = RefundStatus.COMPLETED
        if gateway_refund_id:
            self.gateway_refund_id = gateway_refund_id
        self.processed_at = datetime.now(timezone.utc)
        self.updated_at = self.processed_at
        self.failure_reason = None

    def mark_failed(self, reason: Optional[str] = None) -> None:
        """标记退款失败"""
        self._ensure_pending(RefundStatus.FAILED)
        self.status = RefundStatus.FAILED
        self.failure_reason = reason
        self.processed_at = datetime.now(timezone.utc)
        self.updated_at = self.processed_at


@dataclass(frozen=True)
class LedgerEntry:
    """
    账本条目（Transaction）- 不可变的资金事实

    每次调用网关 process / refund 都会追加且仅追加一条，成功与失败都记录。
    """

    id: Optional[int]
    payment_id: int
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    gateway_transaction_id: Optional[str] = None
    refund_id: Optional[int] = None
    gateway_response: dict = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        currency = _validate_currency(self.currency)
        object.__setattr__(self, "currency", currency)
        object.__setattr__(self, "amount", normalize_amount(self.amount, currency))
        object.__setattr__(self, "type", TransactionType(self.type))
        object.__setattr__(self, "status", TransactionStatus(self.status))
        object.__setattr__(self, "processed_at", _ensure_utc(self.processed_at))
        object.__setattr__(self, "created_at", _ensure_utc(self.created_at))
        if self.gateway_response is None:
            object.__setattr__(self, "gateway_response", {})

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


@dataclass
class WebhookDelivery:
    """网关回调记录（按 gateway_id + event_id 去重）"""

    id: Optional[int]
    gateway_id: str
    event_id: str
    event_type: str
    payload: dict = field(default_factory=dict)
    signature: Optional[str] = None
    payment_id: Optional[int] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        if self.payload is None:
            self.payload = {}

    def record_attempt_failure(self, error_message: Optional[str]) -> None:
        """可重试的失败：保留未处理状态，提供方重投时再次处理"""
        self.processed = False
        self.error_message = error_message

    def mark_processed(self, error_message: Optional[str] = None) -> None:
        self.processed = True
        self.error_message = error_message
        self.processed_at = datetime.now(timezone.utc)
