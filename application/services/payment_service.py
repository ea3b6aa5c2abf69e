"""
Application service orchestrating payment lifecycle use-cases.

Gateway calls happen outside database transactions: each use-case persists
its intent, calls the gateway, then persists the outcome in a second unit
of work. Per-order and per-payment locks serialize the critical sections.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional, TypeVar

from application.dtos.payments import (
    ClientInfo,
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayProcessRequest,
    GatewayProcessResult,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    OrderSummary,
    PaymentHistoryItem,
    PaymentStatusResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
    TransactionDTO,
)
from application.ports.locks import LockProvider, order_lock_key, payment_lock_key
from application.ports.payment_gateway import PaymentGateway
from application.services.gateway_registry import GatewayRegistry
from core.logging_config import get_logger
from domain.common.exceptions import UnauthorizedException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.events import PaymentInitiated
from domain.payment.exceptions import (
    GatewayNotFoundException,
    GatewayRejectedException,
    GatewayUnavailableException,
    OrderNotFoundException,
    PaymentMethodNotFoundException,
)
from domain.payment.ledger import TransactionLedger
from domain.payment.repository import PaymentHistoryQuery
from domain.payment.service import PaymentDomainService


logger = get_logger(__name__)

R = TypeVar("R")


def build_domain_service(uow: AbstractUnitOfWork) -> PaymentDomainService:
    return PaymentDomainService(
        uow.payment_repository,
        uow.refund_repository,
        TransactionLedger(uow.ledger_repository),
    )


def emit_events(events: list) -> None:
    # 事务提交后再对外发布
    for event in events:
        logger.info(
            "payment_domain_event",
            event_name=event.name,
            event_id=event.event_id,
            payment_id=event.payment_id,
            order_id=event.order_id,
        )


async def call_gateway(
    gateway: PaymentGateway,
    operation: str,
    call: Callable[[], Awaitable[R]],
    on_error: Callable[[str], R],
) -> R:
    """调用网关；适配器抛出的意外异常转换为可重试的失败结果，由调用方落库后再报错"""
    try:
        return await call()
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "payment_gateway_call_failed",
            gateway_id=gateway.gateway_id,
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return on_error(f"{operation} failed: {type(exc).__name__}")


class PaymentService:
    """支付生命周期应用服务：发起、处理、查询"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_registry: GatewayRegistry,
        lock_provider: LockProvider,
        *,
        confirmed_order_status: str = "confirmed",
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateway_registry
        self._locks = lock_provider
        self._confirmed_order_status = confirmed_order_status

    def _resolve_gateway(self, gateway_id: str, currency: Optional[str] = None) -> PaymentGateway:
        try:
            gateway = self._gateways.get(gateway_id)
            descriptor = self._gateways.describe(gateway_id)
        except GatewayNotFoundException:
            raise GatewayUnavailableException(gateway_id, "No payment gateway registered for this method") from None
        if currency and not descriptor.supports(currency):
            raise GatewayUnavailableException(gateway_id, f"Gateway does not support currency {currency}")
        return gateway

    async def initiate_payment(
        self,
        req: InitiatePaymentRequest,
        requester_id: str,
        client: Optional[ClientInfo] = None,
    ) -> InitiatePaymentResponse:
        """
        发起支付

        1. 锁定订单，校验订单归属、支付方式、网关，创建 pending 支付
        2. 调用网关 initiate
        3. 成功则记录网关标识；失败则支付 -> failed 并返回 GatewayRejected
        """
        client = client or ClientInfo()
        async with self._locks.lock(order_lock_key(req.order_id)):
            async with self._uow_factory() as uow:
                order = await uow.orders.get(req.order_id)
                if order is None:
                    raise OrderNotFoundException(req.order_id)
                if order.owner_id != requester_id:
                    raise UnauthorizedException(
                        "Order does not belong to the requester",
                        details={"order_id": req.order_id},
                    )
                method = await uow.payment_methods.get(req.payment_method_id)
                if method is None or (method.owner_id and method.owner_id != requester_id):
                    raise PaymentMethodNotFoundException(req.payment_method_id)

                gateway = self._resolve_gateway(method.gateway_id, order.currency)
                domain_service = build_domain_service(uow)
                payment = await domain_service.create_payment(
                    order_id=order.id,
                    payment_method_id=method.id,
                    gateway_id=method.gateway_id,
                    amount=order.amount,
                    currency=order.currency,
                    payer_id=requester_id,
                    metadata=req.metadata,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                )

            logger.info(
                "payment_initiate_request",
                payment_id=payment.id,
                order_id=payment.order_id,
                gateway_id=payment.gateway_id,
                amount=str(payment.amount),
                currency=payment.currency,
            )
            gateway_req = GatewayInitiateRequest(
                payment_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
                order_id=payment.order_id,
                payment_method_id=payment.payment_method_id,
                customer=method.customer.as_dict(),
                metadata=dict(payment.metadata),
            )
            result = await call_gateway(
                gateway,
                "initiate",
                lambda: gateway.initiate(gateway_req),
                lambda error: GatewayInitiateResult(success=False, error=error, retryable=True),
            )

            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment = await domain_service.get_payment(payment.id, for_update=True)
                if result.success:
                    payment.attach_provider_refs(result.transaction_id, result.gateway_transaction_id)
                    if result.redirect_url:
                        payment.update_metadata("redirect_url", result.redirect_url)
                    payment = await uow.payment_repository.update(
                        payment, expected_status=PaymentStatus.PENDING
                    )
                    domain_service.events.append(PaymentInitiated(
                        payment_id=payment.id,
                        order_id=payment.order_id,
                        gateway_id=payment.gateway_id,
                        transaction_id=payment.transaction_id,
                    ))
                else:
                    payment = await domain_service.fail_payment(payment, result.error)
                events = domain_service.clear_events()

        emit_events(events)
        if not result.success:
            logger.warning(
                "payment_initiate_rejected",
                payment_id=payment.id,
                gateway_id=payment.gateway_id,
                error=result.error,
            )
            raise GatewayRejectedException(
                payment.gateway_id,
                result.error,
                retryable=result.retryable,
                payment_id=payment.id,
            )

        logger.info(
            "payment_initiated",
            payment_id=payment.id,
            transaction_id=payment.transaction_id,
        )
        return InitiatePaymentResponse(
            payment_id=payment.id,
            transaction_id=payment.transaction_id,
            redirect_url=result.redirect_url,
            qr_code=result.qr_code,
            status=payment.status,
        )

    async def process_payment(
        self,
        payment_id: int,
        req: Optional[ProcessPaymentRequest] = None,
        *,
        callback_verified: bool = False,
    ) -> ProcessPaymentResponse:
        """
        处理支付（回调或轮询触发）

        ``callback_verified`` 仅由已验签的 webhook 入口置为 True。

        在支付锁内：校验状态 -> 标记 processing -> 调用网关 process ->
        追加 charge 账本记录并迁移状态；成功时同事务将订单置为 confirmed。
        """
        req = req or ProcessPaymentRequest()
        async with self._locks.lock(payment_lock_key(payment_id)):
            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment = await domain_service.begin_processing(payment_id)
                gateway = self._resolve_gateway(payment.gateway_id)

            gateway_req = GatewayProcessRequest(
                payment_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
                transaction_id=payment.transaction_id,
                gateway_transaction_id=payment.gateway_transaction_id,
                callback_data=req.callback_data,
                callback_verified=callback_verified,
            )
            result = await call_gateway(
                gateway,
                "process",
                lambda: gateway.process(gateway_req),
                lambda error: GatewayProcessResult(success=False, error=error, retryable=True),
            )

            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment, entry = await domain_service.record_process_outcome(
                    payment_id,
                    succeeded=result.success,
                    retryable=result.retryable,
                    gateway_transaction_id=result.gateway_transaction_id,
                    gateway_response=result.gateway_response,
                    reason=result.error,
                )
                if result.success:
                    await uow.orders.set_status(payment.order_id, self._confirmed_order_status)
                events = domain_service.clear_events()

        emit_events(events)
        if not result.success:
            logger.warning(
                "payment_process_rejected",
                payment_id=payment.id,
                status=payment.status.value,
                retryable=result.retryable,
                error=result.error,
                transaction_entry_id=entry.id,
            )
            raise GatewayRejectedException(
                payment.gateway_id,
                result.error,
                retryable=result.retryable,
                payment_id=payment.id,
            )

        logger.info(
            "payment_completed",
            payment_id=payment.id,
            order_id=payment.order_id,
            gateway_transaction_id=payment.gateway_transaction_id,
        )
        return ProcessPaymentResponse(
            payment_id=payment.id,
            status=payment.status,
            gateway_transaction_id=payment.gateway_transaction_id,
        )

    async def cancel_payment(self, payment_id: int, reason: Optional[str] = None) -> ProcessPaymentResponse:
        """网关通知支付已取消：pending / processing -> failed，订单状态不变"""
        reason = reason or "Cancelled by provider"
        async with self._locks.lock(payment_lock_key(payment_id)):
            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment = await domain_service.cancel_payment(payment_id, reason)
                events = domain_service.clear_events()

        emit_events(events)
        logger.info("payment_cancelled", payment_id=payment.id, order_id=payment.order_id, reason=reason)
        return ProcessPaymentResponse(
            payment_id=payment.id,
            status=payment.status,
            gateway_transaction_id=payment.gateway_transaction_id,
        )

    async def get_payment_status(
        self,
        payment_id: int,
        requester_id: Optional[str] = None,
    ) -> PaymentStatusResponse:
        """只读：支付状态 + 订单当前状态"""
        async with self._uow_factory(readonly=True) as uow:
            domain_service = build_domain_service(uow)
            payment = await domain_service.get_payment(payment_id)
            self._ensure_payer(payment, requester_id)
            order = await uow.orders.get(payment.order_id)
            refunded = await domain_service.ledger.refunded_total(payment.id)

        return PaymentStatusResponse(
            payment_id=payment.id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            refunded_amount=refunded,
            transaction_id=payment.transaction_id,
            gateway_transaction_id=payment.gateway_transaction_id,
            failure_reason=payment.failure_reason,
            processed_at=payment.processed_at,
            order=OrderSummary(
                id=payment.order_id,
                status=order.status if order else "unknown",
            ),
        )

    async def list_transactions(
        self,
        payment_id: int,
        requester_id: Optional[str] = None,
    ) -> list[TransactionDTO]:
        async with self._uow_factory(readonly=True) as uow:
            domain_service = build_domain_service(uow)
            payment = await domain_service.get_payment(payment_id)
            self._ensure_payer(payment, requester_id)
            entries = await domain_service.ledger.entries(payment.id)
        return [TransactionDTO.from_entity(e) for e in entries]

    async def list_payment_history(
        self,
        query: PaymentHistoryQuery,
        *,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentHistoryItem], int]:
        """分页查询付款人的支付历史，附带账本记录与退款"""
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_history(query, skip=skip, limit=limit)
            total = await uow.payment_repository.count_history(query)
            items = []
            for payment in payments:
                entries = await uow.ledger_repository.list_by_payment(payment.id)
                refunds = await uow.refund_repository.list_by_payment(payment.id)
                items.append(PaymentHistoryItem.from_entity(payment, entries, refunds))
        return items, total

    @staticmethod
    def _ensure_payer(payment: Payment, requester_id: Optional[str]) -> None:
        if requester_id is not None and payment.payer_id and payment.payer_id != requester_id:
            raise UnauthorizedException(
                "Payment does not belong to the requester",
                details={"payment_id": payment.id},
            )
