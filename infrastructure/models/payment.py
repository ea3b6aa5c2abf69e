"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


# 金额统一用 NUMERIC(18, 4)，实体按货币精度规范化
MONEY = Numeric(precision=18, scale=4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单信息
    order_id = Column(String(100), index=True, nullable=False, comment="订单ID")
    # 非失败支付时等于 order_id，失败后置空；唯一约束保证每个订单最多一笔活跃支付
    active_order_key = Column(String(100), unique=True, nullable=True, comment="活跃支付占位键")
    payer_id = Column(String(100), nullable=True, index=True, comment="付款人ID")

    # 支付渠道信息
    payment_method_id = Column(String(100), nullable=False, comment="支付方式ID")
    gateway_id = Column(String(50), nullable=False, index=True, comment="网关ID")
    transaction_id = Column(String(200), nullable=True, comment="发起时网关返回的交易号")
    gateway_transaction_id = Column(String(200), nullable=True, comment="网关侧交易号")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(MONEY, nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/completed/failed/refunded"
    )
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 客户端信息
    ip_address = Column(String(64), nullable=True, comment="客户端IP")
    user_agent = Column(String(500), nullable=True, comment="客户端UA")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理完成时间")

    # 关系
    refunds = relationship("RefundModel", back_populates="payment", lazy="select")
    transactions = relationship("PaymentTransactionModel", back_populates="payment", lazy="select")

    # 索引
    __table_args__ = (
        Index("ix_payments_payer_status", "payer_id", "status"),
        Index("ix_payments_gateway_txn", "gateway_id", "transaction_id"),
        Index("ix_payments_gateway_gw_txn", "gateway_id", "gateway_transaction_id"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, order_id='{self.order_id}', "
            f"gateway_id='{self.gateway_id}', amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，记录支付的退款明细
    """
    __tablename__ = "refunds"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 关联支付（财务记录不级联删除）
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 订单信息（冗余，便于查询）
    order_id = Column(String(100), index=True, nullable=False, comment="订单ID")

    # 金额信息
    amount = Column(MONEY, nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="退款状态: pending/completed/failed"
    )

    # 退款原因
    reason = Column(String(30), nullable=False, comment="退款原因: customer_request/duplicate/fraudulent/service_issue")
    notes = Column(Text, nullable=True, comment="备注")
    requested_by = Column(String(100), nullable=True, comment="申请人")
    gateway_refund_id = Column(String(200), nullable=True, index=True, comment="网关退款ID")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="网关处理完成时间")

    # 关系
    payment = relationship("PaymentModel", back_populates="refunds")

    # 索引
    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status='{self.status}')>"
        )


class PaymentTransactionModel(Base):
    """
    交易账本模型（只追加）

    仓储层只提供 insert 与 select，不提供 update / delete
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    refund_id = Column(Integer, ForeignKey("refunds.id", ondelete="RESTRICT"), nullable=True, comment="关联的退款ID")
    type = Column(String(10), nullable=False, comment="类型: charge/refund")
    amount = Column(MONEY, nullable=False, comment="金额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    status = Column(String(20), nullable=False, comment="结果: completed/failed")
    gateway_transaction_id = Column(String(200), nullable=True, comment="网关交易号/退款号")
    gateway_response = Column(JSON, nullable=True, comment="网关原始响应")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="网关处理时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="写入时间")

    payment = relationship("PaymentModel", back_populates="transactions")

    __table_args__ = (
        Index("ix_payment_transactions_payment_type", "payment_id", "type", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentTransactionModel(id={self.id}, payment_id={self.payment_id}, "
            f"type='{self.type}', amount={self.amount}, status='{self.status}')>"
        )


class PaymentWebhookModel(Base):
    """网关回调记录"""
    __tablename__ = "payment_webhooks"

    id = Column(Integer, primary_key=True, index=True)
    gateway_id = Column(String(50), nullable=False, comment="网关ID")
    event_id = Column(String(200), nullable=False, comment="网关事件ID")
    event_type = Column(String(100), nullable=False, comment="事件类型")
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True, comment="关联的支付ID")
    payload = Column(JSON, nullable=False, comment="回调内容")
    signature = Column(String(500), nullable=True, comment="签名")
    processed = Column(Boolean, nullable=False, default=False, comment="是否已处理")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理时间")
    error_message = Column(Text, nullable=True, comment="处理错误")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="接收时间")

    __table_args__ = (
        UniqueConstraint("gateway_id", "event_id", name="uq_payment_webhooks_gateway_event"),
    )

    def __repr__(self):
        return (
            f"<PaymentWebhookModel(id={self.id}, gateway_id='{self.gateway_id}', "
            f"event_id='{self.event_id}', processed={self.processed})>"
        )
