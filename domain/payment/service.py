"""
支付领域服务 - 处理事务内的支付业务规则

网关调用不在这里发生：应用层在事务之外调用网关，再把结果交给领域服务落库。
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
from datetime import datetime, timezone

from .entity import (
    LedgerEntry,
    Payment,
    PaymentStatus,
    Refund,
    RefundReason,
    RefundStatus,
)
from .events import (
    PaymentCompleted,
    PaymentFailed,
    PaymentRefunded,
    RefundCompleted,
    RefundFailed,
)
from .exceptions import (
    PaymentAlreadyCompletedException,
    PaymentAlreadyExistsException,
    PaymentInvalidStateException,
    PaymentNotFoundException,
    PaymentNotRefundableException,
    RefundExceedsBalanceException,
    RefundNotFoundException,
)
from .ledger import TransactionLedger
from .money import normalize_amount
from .repository import PaymentRepository, RefundRepository


@dataclass(frozen=True)
class RefundableBalance:
    amount: Decimal
    refunded: Decimal
    reserved: Decimal

    @property
    def available(self) -> Decimal:
        return self.amount - self.refunded - self.reserved


class PaymentDomainService:
    """
    支付领域服务 - 编排事务内的业务流程

    职责：
    1. 创建支付时的业务校验（订单活跃支付唯一）
    2. 处理结果落库：状态迁移 + 账本追加
    3. 退款业务规则（余额校验、预占、结算）
    4. 产生领域事件
    """

    def __init__(
        self,
        payment_repository: PaymentRepository,
        refund_repository: RefundRepository,
        ledger: TransactionLedger,
    ):
        self.payment_repository = payment_repository
        self.refund_repository = refund_repository
        self.ledger = ledger
        self.events: List = []  # 领域事件收集

    async def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        if for_update:
            payment = await self.payment_repository.get_for_update(payment_id)
        else:
            payment = await self.payment_repository.get_by_id(payment_id)
        if not payment:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def create_payment(
        self,
        *,
        order_id: str,
        payment_method_id: str,
        gateway_id: str,
        amount: Decimal,
        currency: str,
        payer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Payment:
        """
        创建支付记录

        业务规则：
        1. 订单不能存在 pending / processing / completed 的支付
        2. 失败的支付不阻止重新发起
        """
        existing = await self.payment_repository.get_active_by_order_id(order_id)
        if existing:
            raise PaymentAlreadyExistsException(
                order_id, payment_id=existing.id, status=existing.status.value
            )

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=None,
            order_id=order_id,
            payment_method_id=payment_method_id,
            gateway_id=gateway_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            payer_id=payer_id,
            metadata=dict(metadata or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )
        return await self.payment_repository.create(payment)

    async def fail_payment(self, payment: Payment, reason: Optional[str]) -> Payment:
        previous = payment.status
        payment.mark_failed(reason)
        updated = await self.payment_repository.update(payment, expected_status=previous)
        self.events.append(PaymentFailed(
            payment_id=updated.id,
            order_id=updated.order_id,
            gateway_id=updated.gateway_id,
            reason=reason,
        ))
        return updated

    async def cancel_payment(self, payment_id: int, reason: Optional[str]) -> Payment:
        """网关侧取消：仅 pending / processing 可取消，不产生账本记录"""
        payment = await self.get_payment(payment_id, for_update=True)
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise PaymentAlreadyCompletedException(payment.id, payment.status.value)
        if payment.status == PaymentStatus.FAILED:
            raise PaymentInvalidStateException(payment.id, payment.status.value)
        return await self.fail_payment(payment, reason)

    async def ensure_processable(self, payment: Payment) -> None:
        """
        校验支付可以进入 process

        业务规则：
        1. completed / refunded 视为已完成，不能重复处理
        2. failed 为终态，必须新建支付
        3. 账本中已有成功扣款则视为已完成（回调去重）
        """
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise PaymentAlreadyCompletedException(payment.id, payment.status.value)
        if payment.status == PaymentStatus.FAILED:
            raise PaymentInvalidStateException(payment.id, payment.status.value)
        if await self.ledger.completed_charge(payment.id):
            raise PaymentAlreadyCompletedException(payment.id, PaymentStatus.COMPLETED.value)

    async def begin_processing(self, payment_id: int) -> Payment:
        payment = await self.get_payment(payment_id, for_update=True)
        await self.ensure_processable(payment)
        previous = payment.status
        if previous != PaymentStatus.PROCESSING:
            payment.mark_processing()
            payment = await self.payment_repository.update(payment, expected_status=previous)
        return payment

    async def record_process_outcome(
        self,
        payment_id: int,
        *,
        succeeded: bool,
        retryable: bool,
        gateway_transaction_id: Optional[str],
        gateway_response: Optional[dict],
        reason: Optional[str],
    ) -> tuple[Payment, LedgerEntry]:
        """
        落库一次 process 调用的结果

        无论成功失败都追加一条 charge 账本记录；成功 -> completed，
        可重试失败保持 processing，其余失败 -> failed。
        """
        payment = await self.get_payment(payment_id, for_update=True)
        await self.ensure_processable(payment)

        charge_ref = gateway_transaction_id or payment.gateway_transaction_id
        entry = await self.ledger.record_charge(
            payment,
            succeeded=succeeded,
            gateway_transaction_id=charge_ref,
            gateway_response=gateway_response,
        )

        previous = payment.status
        if succeeded:
            payment.mark_completed(charge_ref)
            payment = await self.payment_repository.update(payment, expected_status=previous)
            self.events.append(PaymentCompleted(
                payment_id=payment.id,
                order_id=payment.order_id,
                gateway_id=payment.gateway_id,
                gateway_transaction_id=charge_ref,
                amount=str(payment.amount),
            ))
        elif retryable:
            payment.record_retryable_failure(reason)
            payment = await self.payment_repository.update(payment, expected_status=previous)
        else:
            payment = await self.fail_payment(payment, reason)
        return payment, entry

    async def refundable_balance(self, payment: Payment) -> RefundableBalance:
        """可退余额 = 支付金额 - 已完成退款（账本）- 处理中退款"""
        refunded = await self.ledger.refunded_total(payment.id)
        reserved = await self.refund_repository.get_pending_amount(payment.id)
        return RefundableBalance(amount=payment.amount, refunded=refunded, reserved=reserved)

    async def reserve_refund(
        self,
        payment_id: int,
        *,
        amount,
        reason: RefundReason,
        notes: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> tuple[Payment, Refund]:
        """
        余额校验并创建 pending 退款（需与其他退款请求互斥执行）

        业务规则：
        1. 只有 completed 的支付可以退款
        2. 退款金额 > 0 且符合货币精度
        3. 退款金额不能超过可退余额
        """
        payment = await self.get_payment(payment_id, for_update=True)
        if payment.status != PaymentStatus.COMPLETED:
            raise PaymentNotRefundableException(payment.id, payment.status.value)

        refund_amount = normalize_amount(amount, payment.currency)
        balance = await self.refundable_balance(payment)
        if refund_amount > balance.available:
            raise RefundExceedsBalanceException(
                payment.id,
                requested=refund_amount,
                available=balance.available,
                refunded=balance.refunded,
                reserved=balance.reserved,
            )

        now = datetime.now(timezone.utc)
        refund = Refund(
            id=None,
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=refund_amount,
            currency=payment.currency,
            status=RefundStatus.PENDING,
            reason=reason,
            notes=notes,
            requested_by=requested_by,
            created_at=now,
            updated_at=now,
        )
        created = await self.refund_repository.create(refund)
        return payment, created

    async def settle_refund(
        self,
        refund_id: int,
        *,
        succeeded: bool,
        gateway_refund_id: Optional[str],
        gateway_response: Optional[dict],
        reason: Optional[str],
    ) -> tuple[Payment, Refund, LedgerEntry]:
        """
        落库一次 refund 调用的结果

        成功：退款 -> completed，追加 refund 账本记录，累计退款等于支付金额时支付 -> refunded。
        失败：退款 -> failed，追加失败的 refund 账本记录，支付状态不变。
        """
        refund = await self.refund_repository.get_by_id(refund_id)
        if not refund:
            raise RefundNotFoundException(refund_id)
        payment = await self.get_payment(refund.payment_id, for_update=True)

        if succeeded:
            refund.mark_completed(gateway_refund_id)
        else:
            refund.mark_failed(reason)
        refund = await self.refund_repository.update(refund)

        entry = await self.ledger.record_refund(
            refund,
            succeeded=succeeded,
            gateway_refund_id=gateway_refund_id,
            gateway_response=gateway_response,
        )

        if not succeeded:
            self.events.append(RefundFailed(
                payment_id=payment.id,
                order_id=payment.order_id,
                gateway_id=payment.gateway_id,
                refund_id=refund.id,
                reason=reason,
            ))
            return payment, refund, entry

        self.events.append(RefundCompleted(
            payment_id=payment.id,
            order_id=payment.order_id,
            gateway_id=payment.gateway_id,
            refund_id=refund.id,
            amount=str(refund.amount),
        ))
        refunded = await self.ledger.refunded_total(payment.id)
        if refunded == payment.amount and payment.status == PaymentStatus.COMPLETED:
            payment.mark_refunded()
            payment = await self.payment_repository.update(
                payment, expected_status=PaymentStatus.COMPLETED
            )
            self.events.append(PaymentRefunded(
                payment_id=payment.id,
                order_id=payment.order_id,
                gateway_id=payment.gateway_id,
                amount=str(refunded),
            ))
        return payment, refund, entry

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
