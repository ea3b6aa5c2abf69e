"""
订单 / 支付方式协作方的 SQLAlchemy 实现

与支付仓储共享同一会话，订单状态更新与支付结果在同一事务提交。
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.collaborators import (
    CustomerInfo,
    OrderInfo,
    OrderStore,
    PaymentMethodInfo,
    PaymentMethodStore,
)
from domain.payment.exceptions import OrderNotFoundException
from infrastructure.models.order import OrderModel, PaymentMethodModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderStore(OrderStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str) -> Optional[OrderInfo]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return OrderInfo(
            id=model.id,
            owner_id=model.buyer_id,
            amount=Decimal(str(model.total_amount)),
            currency=model.currency.upper(),
            status=model.status,
        )

    async def set_status(self, order_id: str, status: str) -> None:
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise OrderNotFoundException(order_id)
        logger.info("order_status_updated", order_id=order_id, status=status)


class SQLAlchemyPaymentMethodStore(PaymentMethodStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, payment_method_id: str) -> Optional[PaymentMethodInfo]:
        result = await self.session.execute(
            select(PaymentMethodModel).where(
                PaymentMethodModel.id == payment_method_id,
                PaymentMethodModel.is_active.is_(True),
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return PaymentMethodInfo(
            id=model.id,
            gateway_id=model.gateway_id,
            owner_id=model.owner_id,
            customer=CustomerInfo(
                name=model.customer_name,
                email=model.customer_email,
                phone=model.customer_phone,
            ),
        )
