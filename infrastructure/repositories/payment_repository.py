"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Optional, List
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, or_
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import (
    LedgerEntry,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    TransactionStatus,
    TransactionType,
    WebhookDelivery,
)
from domain.payment.exceptions import (
    PaymentAlreadyExistsException,
    PaymentConcurrentUpdateException,
    PaymentNotFoundException,
    RefundNotFoundException,
)
from domain.payment.money import sum_amounts
from domain.payment.repository import (
    LedgerRepository,
    PaymentHistoryQuery,
    PaymentRepository,
    RefundRepository,
    WebhookDeliveryRepository,
)
from infrastructure.models.payment import (
    PaymentModel,
    PaymentTransactionModel,
    PaymentWebhookModel,
    RefundModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


def _active_order_key(payment: Payment) -> Optional[str]:
    return None if payment.status == PaymentStatus.FAILED else payment.order_id


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_id=model.order_id,
            payment_method_id=model.payment_method_id,
            gateway_id=model.gateway_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=PaymentStatus(model.status),
            payer_id=model.payer_id,
            transaction_id=model.transaction_id,
            gateway_transaction_id=model.gateway_transaction_id,
            failure_reason=model.failure_reason,
            metadata=dict(model.extra_metadata or {}),
            ip_address=model.ip_address,
            user_agent=model.user_agent,
            created_at=model.created_at,
            updated_at=model.updated_at,
            processed_at=model.processed_at,
        )

    def _mutable_values(self, entity: Payment) -> dict:
        """可更新字段（不含 amount / currency / order_id 等创建后不可变字段）"""
        return {
            "status": entity.status.value,
            "active_order_key": _active_order_key(entity),
            "transaction_id": entity.transaction_id,
            "gateway_transaction_id": entity.gateway_transaction_id,
            "failure_reason": entity.failure_reason,
            "extra_metadata": entity.metadata,
            "updated_at": entity.updated_at,
            "processed_at": entity.processed_at,
        }

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            payer_id=entity.payer_id,
            payment_method_id=entity.payment_method_id,
            gateway_id=entity.gateway_id,
            amount=entity.amount,
            currency=entity.currency,
            ip_address=entity.ip_address,
            user_agent=entity.user_agent,
            created_at=entity.created_at,
            **self._mutable_values(entity),
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            if "active_order_key" in str(e).lower():
                logger.warning("payment_create_conflict", order_id=payment.order_id)
                raise PaymentAlreadyExistsException(payment.order_id) from e
            raise
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            gateway_id=db_payment.gateway_id,
        )
        return self._to_entity(db_payment)

    async def _get_model(self, payment_id: int, *, for_update: bool = False) -> Optional[PaymentModel]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        db_payment = await self._get_model(payment_id)
        return self._to_entity(db_payment) if db_payment else None

    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付（SELECT ... FOR UPDATE）"""
        db_payment = await self._get_model(payment_id, for_update=True)
        return self._to_entity(db_payment) if db_payment else None

    async def get_active_by_order_id(self, order_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.active_order_key == order_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_gateway_reference(self, gateway_id: str, reference: str) -> Optional[Payment]:
        """根据网关交易号获取支付（优先匹配最近创建的记录）"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.gateway_id == gateway_id,
                or_(
                    PaymentModel.transaction_id == reference,
                    PaymentModel.gateway_transaction_id == reference,
                ),
            )
            .order_by(PaymentModel.id.desc())
            .limit(1)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    def _history_filters(self, query: PaymentHistoryQuery) -> list:
        filters = [PaymentModel.payer_id == query.payer_id]
        if query.status is not None:
            filters.append(PaymentModel.status == query.status.value)
        if query.start_date is not None:
            filters.append(PaymentModel.created_at >= query.start_date)
        if query.end_date is not None:
            filters.append(PaymentModel.created_at <= query.end_date)
        if query.min_amount is not None:
            filters.append(PaymentModel.amount >= query.min_amount)
        if query.max_amount is not None:
            filters.append(PaymentModel.amount <= query.max_amount)
        return filters

    async def list_history(
        self,
        query: PaymentHistoryQuery,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Payment]:
        stmt = (
            select(PaymentModel)
            .where(*self._history_filters(query))
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def count_history(self, query: PaymentHistoryQuery) -> int:
        result = await self.session.execute(
            select(func.count(PaymentModel.id)).where(*self._history_filters(query))
        )
        return int(result.scalar() or 0)

    async def update(
        self,
        payment: Payment,
        *,
        expected_status: Optional[PaymentStatus] = None,
    ) -> Payment:
        """更新支付记录（可选状态比较写）"""
        stmt = update(PaymentModel).where(PaymentModel.id == payment.id)
        if expected_status is not None:
            stmt = stmt.where(PaymentModel.status == expected_status.value)
        result = await self.session.execute(
            stmt.values(**self._mutable_values(payment)).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if expected_status is not None:
                logger.warning(
                    "payment_update_conflict",
                    payment_id=payment.id,
                    expected_status=expected_status.value,
                )
                raise PaymentConcurrentUpdateException(payment.id, expected_status.value)
            raise PaymentNotFoundException(payment.id)

        logger.info(
            "payment_updated",
            payment_id=payment.id,
            order_id=payment.order_id,
            status=payment.status.value,
        )
        updated = await self.get_by_id(payment.id)
        return updated


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            order_id=model.order_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            notes=model.notes,
            requested_by=model.requested_by,
            gateway_refund_id=model.gateway_refund_id,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
            processed_at=model.processed_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        return RefundModel(
            id=entity.id,
            payment_id=entity.payment_id,
            order_id=entity.order_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            reason=entity.reason.value,
            notes=entity.notes,
            requested_by=entity.requested_by,
            gateway_refund_id=entity.gateway_refund_id,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            processed_at=entity.processed_at,
        )

    async def create(self, refund: Refund) -> Refund:
        db_refund = self._to_model(refund)
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)
        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            amount=str(db_refund.amount),
        )
        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.id == refund_id)
            .execution_options(populate_existing=True)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.payment_id == payment_id)
            .order_by(RefundModel.id.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def get_pending_amount(self, payment_id: int) -> Decimal:
        result = await self.session.execute(
            select(RefundModel.amount).where(
                RefundModel.payment_id == payment_id,
                RefundModel.status == RefundStatus.PENDING.value,
            )
        )
        return sum_amounts(Decimal(str(amount)) for amount in result.scalars().all())

    async def update(self, refund: Refund) -> Refund:
        """更新退款记录（只允许修改仍为 pending 的记录）"""
        result = await self.session.execute(
            update(RefundModel)
            .where(
                RefundModel.id == refund.id,
                RefundModel.status == RefundStatus.PENDING.value,
            )
            .values(
                status=refund.status.value,
                gateway_refund_id=refund.gateway_refund_id,
                failure_reason=refund.failure_reason,
                updated_at=refund.updated_at,
                processed_at=refund.processed_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise RefundNotFoundException(refund.id)
        logger.info("refund_updated", refund_id=refund.id, status=refund.status.value)
        return await self.get_by_id(refund.id)


class SQLAlchemyLedgerRepository(LedgerRepository):
    """账本仓储：只有 insert / select"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTransactionModel) -> LedgerEntry:
        return LedgerEntry(
            id=model.id,
            payment_id=model.payment_id,
            type=TransactionType(model.type),
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            gateway_transaction_id=model.gateway_transaction_id,
            refund_id=model.refund_id,
            gateway_response=dict(model.gateway_response or {}),
            processed_at=model.processed_at,
            created_at=model.created_at,
        )

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        db_entry = PaymentTransactionModel(
            payment_id=entry.payment_id,
            refund_id=entry.refund_id,
            type=entry.type.value,
            amount=entry.amount,
            currency=entry.currency,
            status=entry.status.value,
            gateway_transaction_id=entry.gateway_transaction_id,
            gateway_response=entry.gateway_response,
            processed_at=entry.processed_at,
        )
        self.session.add(db_entry)
        await self.session.flush()
        await self.session.refresh(db_entry)
        logger.info(
            "ledger_entry_appended",
            entry_id=db_entry.id,
            payment_id=db_entry.payment_id,
            type=db_entry.type,
            status=db_entry.status,
            amount=str(entry.amount),
        )
        return self._to_entity(db_entry)

    async def list_by_payment(
        self,
        payment_id: int,
        type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
    ) -> List[LedgerEntry]:
        stmt = select(PaymentTransactionModel).where(PaymentTransactionModel.payment_id == payment_id)
        if type is not None:
            stmt = stmt.where(PaymentTransactionModel.type == type.value)
        if status is not None:
            stmt = stmt.where(PaymentTransactionModel.status == status.value)
        result = await self.session.execute(stmt.order_by(PaymentTransactionModel.id.asc()))
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyWebhookDeliveryRepository(WebhookDeliveryRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentWebhookModel) -> WebhookDelivery:
        return WebhookDelivery(
            id=model.id,
            gateway_id=model.gateway_id,
            event_id=model.event_id,
            event_type=model.event_type,
            payload=dict(model.payload or {}),
            signature=model.signature,
            payment_id=model.payment_id,
            processed=bool(model.processed),
            processed_at=model.processed_at,
            error_message=model.error_message,
            created_at=model.created_at,
        )

    async def create(self, event: WebhookDelivery) -> WebhookDelivery:
        db_event = PaymentWebhookModel(
            gateway_id=event.gateway_id,
            event_id=event.event_id,
            event_type=event.event_type,
            payment_id=event.payment_id,
            payload=event.payload,
            signature=event.signature,
            processed=event.processed,
        )
        self.session.add(db_event)
        await self.session.flush()
        await self.session.refresh(db_event)
        return self._to_entity(db_event)

    async def get_by_event_id(self, gateway_id: str, event_id: str) -> Optional[WebhookDelivery]:
        result = await self.session.execute(
            select(PaymentWebhookModel)
            .where(
                PaymentWebhookModel.gateway_id == gateway_id,
                PaymentWebhookModel.event_id == event_id,
            )
            .execution_options(populate_existing=True)
        )
        db_event = result.scalar_one_or_none()
        return self._to_entity(db_event) if db_event else None

    async def update(self, event: WebhookDelivery) -> WebhookDelivery:
        await self.session.execute(
            update(PaymentWebhookModel)
            .where(PaymentWebhookModel.id == event.id)
            .values(
                processed=event.processed,
                processed_at=event.processed_at,
                error_message=event.error_message,
                payment_id=event.payment_id,
            )
            .execution_options(synchronize_session=False)
        )
        return event
