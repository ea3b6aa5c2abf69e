"""
订单与支付方式模型

由上游订单系统维护，支付服务只读取并在支付完成时更新订单状态。
"""
from sqlalchemy import Boolean, Column, String, Numeric, DateTime
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String(100), primary_key=True, comment="订单ID")
    buyer_id = Column(String(100), nullable=False, index=True, comment="买家ID")
    total_amount = Column(Numeric(precision=18, scale=4), nullable=False, comment="订单总额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    status = Column(String(30), nullable=False, default="pending", comment="订单状态")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', status='{self.status}', total={self.total_amount})>"


class PaymentMethodModel(Base):
    __tablename__ = "payment_methods"

    id = Column(String(100), primary_key=True, comment="支付方式ID")
    owner_id = Column(String(100), nullable=True, index=True, comment="所属用户")
    gateway_id = Column(String(50), nullable=False, comment="网关ID")
    type = Column(String(30), nullable=False, default="card", comment="类型: card/mobile_money/bank_transfer")
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(200), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<PaymentMethodModel(id='{self.id}', gateway_id='{self.gateway_id}')>"
