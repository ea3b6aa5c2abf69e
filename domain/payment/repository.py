"""
支付仓储接口 - 定义支付数据访问的抽象接口

支付记录为财务数据，任何仓储都不提供删除操作；账本仓储只允许追加与读取。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .entity import (
    LedgerEntry,
    Payment,
    PaymentStatus,
    Refund,
    TransactionStatus,
    TransactionType,
    WebhookDelivery,
)


@dataclass(frozen=True)
class PaymentHistoryQuery:
    """支付历史查询条件"""
    payer_id: str
    status: Optional[PaymentStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（订单已存在活跃支付时抛出 PaymentAlreadyExistsException）"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付并在当前事务内加行锁"""
        pass

    @abstractmethod
    async def get_active_by_order_id(self, order_id: str) -> Optional[Payment]:
        """获取订单当前的活跃支付（pending/processing/completed）"""
        pass

    @abstractmethod
    async def get_by_gateway_reference(self, gateway_id: str, reference: str) -> Optional[Payment]:
        """根据网关交易号（transaction_id 或 gateway_transaction_id）获取支付"""
        pass

    @abstractmethod
    async def list_history(
        self,
        query: PaymentHistoryQuery,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Payment]:
        """按条件分页查询支付历史（按创建时间倒序）"""
        pass

    @abstractmethod
    async def count_history(self, query: PaymentHistoryQuery) -> int:
        """统计符合条件的支付数量"""
        pass

    @abstractmethod
    async def update(
        self,
        payment: Payment,
        *,
        expected_status: Optional[PaymentStatus] = None,
    ) -> Payment:
        """
        更新支付记录

        指定 expected_status 时为状态比较写：存储中的状态不等于期望值则抛出
        PaymentConcurrentUpdateException。
        """
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        """获取支付的退款列表（按创建时间正序）"""
        pass

    @abstractmethod
    async def get_pending_amount(self, payment_id: int) -> Decimal:
        """获取处理中（pending）退款占用的金额"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        """更新退款记录（仅允许 pending 状态的记录被修改）"""
        pass


class LedgerRepository(ABC):
    """账本仓储 - 只追加、只读"""

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """追加一条账本记录"""
        pass

    @abstractmethod
    async def list_by_payment(
        self,
        payment_id: int,
        type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
    ) -> List[LedgerEntry]:
        """按支付读取账本记录（按写入顺序）"""
        pass


class WebhookDeliveryRepository(ABC):
    """网关回调记录仓储"""

    @abstractmethod
    async def create(self, event: WebhookDelivery) -> WebhookDelivery:
        """记录回调（gateway_id + event_id 唯一）"""
        pass

    @abstractmethod
    async def get_by_event_id(self, gateway_id: str, event_id: str) -> Optional[WebhookDelivery]:
        pass

    @abstractmethod
    async def update(self, event: WebhookDelivery) -> WebhookDelivery:
        pass
