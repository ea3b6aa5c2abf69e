"""
交易账本 - 只追加的资金流水

账本是"实际发生了多少资金流动"的唯一依据：退款余额、审计都从这里读取，
而不是从可变的支付状态字段推断。
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .entity import (
    LedgerEntry,
    Payment,
    Refund,
    TransactionStatus,
    TransactionType,
)
from .money import sum_amounts
from .repository import LedgerRepository


class TransactionLedger:
    """账本组件：对外只暴露追加与读取"""

    def __init__(self, repository: LedgerRepository):
        self._repository = repository

    async def record_charge(
        self,
        payment: Payment,
        *,
        succeeded: bool,
        gateway_transaction_id: Optional[str],
        gateway_response: Optional[dict] = None,
    ) -> LedgerEntry:
        """记录一次 process 调用的结果"""
        entry = LedgerEntry(
            id=None,
            payment_id=payment.id,
            type=TransactionType.CHARGE,
            amount=payment.amount,
            currency=payment.currency,
            status=TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED,
            gateway_transaction_id=gateway_transaction_id,
            gateway_response=dict(gateway_response or {}),
            processed_at=datetime.now(timezone.utc),
        )
        return await self._repository.append(entry)

    async def record_refund(
        self,
        refund: Refund,
        *,
        succeeded: bool,
        gateway_refund_id: Optional[str],
        gateway_response: Optional[dict] = None,
    ) -> LedgerEntry:
        """记录一次 refund 调用的结果"""
        entry = LedgerEntry(
            id=None,
            payment_id=refund.payment_id,
            type=TransactionType.REFUND,
            amount=refund.amount,
            currency=refund.currency,
            status=TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED,
            gateway_transaction_id=gateway_refund_id,
            refund_id=refund.id,
            gateway_response=dict(gateway_response or {}),
            processed_at=datetime.now(timezone.utc),
        )
        return await self._repository.append(entry)

    async def entries(
        self,
        payment_id: int,
        type: Optional[TransactionType] = None,
    ) -> List[LedgerEntry]:
        return await self._repository.list_by_payment(payment_id, type=type)

    async def completed_charge(self, payment_id: int) -> Optional[LedgerEntry]:
        """已成功的扣款记录（每笔支付至多一条）"""
        charges = await self._repository.list_by_payment(
            payment_id,
            type=TransactionType.CHARGE,
            status=TransactionStatus.COMPLETED,
        )
        return charges[0] if charges else None

    async def refunded_total(self, payment_id: int) -> Decimal:
        """已成功退款总额"""
        refunds = await self._repository.list_by_payment(
            payment_id,
            type=TransactionType.REFUND,
            status=TransactionStatus.COMPLETED,
        )
        return sum_amounts(entry.amount for entry in refunds)
