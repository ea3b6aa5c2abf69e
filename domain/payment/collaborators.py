"""
外部协作方边界 - 订单与支付方式

订单、支付方式由上游系统维护；支付引擎只读取它们，并在支付完成时写订单状态。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class CustomerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def as_dict(self) -> dict:
        return {k: v for k, v in (("name", self.name), ("email", self.email), ("phone", self.phone)) if v}


@dataclass(frozen=True)
class OrderInfo:
    id: str
    owner_id: str
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class PaymentMethodInfo:
    id: str
    gateway_id: str
    owner_id: Optional[str] = None
    customer: CustomerInfo = field(default_factory=CustomerInfo)


class OrderStore(ABC):
    """订单服务边界"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderInfo]:
        pass

    @abstractmethod
    async def set_status(self, order_id: str, status: str) -> None:
        pass


class PaymentMethodStore(ABC):
    """支付方式存储边界（只读）"""

    @abstractmethod
    async def get(self, payment_method_id: str) -> Optional[PaymentMethodInfo]:
        pass
