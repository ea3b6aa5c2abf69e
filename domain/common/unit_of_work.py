"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.collaborators import OrderStore, PaymentMethodStore
from domain.payment.repository import (
    LedgerRepository,
    PaymentRepository,
    RefundRepository,
    WebhookDeliveryRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象

    订单与支付方式协作方也挂在同一个 UoW 上，使订单状态更新与支付落库同事务提交。
    """

    payment_repository: PaymentRepository
    refund_repository: RefundRepository
    ledger_repository: LedgerRepository
    webhook_repository: WebhookDeliveryRepository
    orders: OrderStore
    payment_methods: PaymentMethodStore

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.ledger_repository = None  # type: ignore[assignment]
        self.webhook_repository = None  # type: ignore[assignment]
        self.orders = None  # type: ignore[assignment]
        self.payment_methods = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
