"""
Refund use-cases: request and list refunds of a completed payment.

The balance check and the pending refund row are created under the payment
lock; pending refunds reserve their amount so the gateway call can run
outside the lock without letting a concurrent request overdraw the payment.
Settlement of a gateway result takes only the payment row lock and retries
transient storage errors.
"""
from __future__ import annotations

import hashlib
from decimal import Decimal
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    RefundDTO,
    RefundPaymentRequest,
    RefundResponse,
)
from application.ports.locks import LockProvider, payment_lock_key
from application.services.gateway_registry import GatewayRegistry
from application.services.payment_service import build_domain_service, call_gateway, emit_events
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException, InvalidAmountException, UnauthorizedException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, Refund, RefundReason
from domain.payment.exceptions import (
    GatewayNotFoundException,
    GatewayRejectedException,
    GatewayUnavailableException,
    RefundExceedsBalanceException,
)
from domain.payment.money import to_decimal


logger = get_logger(__name__)


def refund_idempotency_key(payment_id: int, refund_id: int, amount: Decimal, currency: str) -> str:
    # Stable key derived from business identifiers (no timestamp)
    base = f"refund|{payment_id}|{refund_id}|{amount}|{currency}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class RefundService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_registry: GatewayRegistry,
        lock_provider: LockProvider,
        *,
        settle_attempts: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateway_registry
        self._locks = lock_provider
        self._settle_attempts = settle_attempts

    async def request_refund(
        self,
        payment_id: int,
        req: RefundPaymentRequest,
        requester_id: Optional[str] = None,
        *,
        is_operator: bool = False,
    ) -> RefundResponse:
        """
        申请退款

        业务规则：
        1. 金额必须为正（在触达存储之前校验）
        2. 支付必须为 completed
        3. 金额不超过：支付金额 - 已完成退款 - 处理中退款
        4. 网关失败时退款 -> failed，支付状态不变，不自动重试
        """
        amount = to_decimal(req.amount)
        if amount <= 0:
            raise InvalidAmountException(f"Refund amount must be greater than 0: {amount}", amount=amount)

        async with self._locks.lock(payment_lock_key(payment_id)):
            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment = await domain_service.get_payment(payment_id)
                if not is_operator and requester_id is not None and payment.payer_id != requester_id:
                    raise UnauthorizedException(
                        "Only the payer or an operator can refund this payment",
                        details={"payment_id": payment_id},
                    )
                try:
                    payment, refund = await domain_service.reserve_refund(
                        payment_id,
                        amount=amount,
                        reason=req.reason,
                        notes=req.notes,
                        requested_by=requester_id,
                    )
                except RefundExceedsBalanceException as exc:
                    logger.warning("refund_rejected_exceeds_balance", payment_id=payment_id, details=exc.details)
                    raise
                try:
                    gateway = self._gateways.get(payment.gateway_id)
                except GatewayNotFoundException:
                    raise GatewayUnavailableException(payment.gateway_id) from None

        logger.info(
            "refund_requested",
            payment_id=payment.id,
            refund_id=refund.id,
            amount=str(refund.amount),
            reason=refund.reason.value,
        )
        gateway_req = GatewayRefundRequest(
            payment_id=payment.id,
            refund_id=refund.id,
            amount=refund.amount,
            currency=refund.currency,
            reason=refund.reason.value,
            notes=refund.notes,
            transaction_id=payment.transaction_id,
            gateway_transaction_id=payment.gateway_transaction_id,
            idempotency_key=refund_idempotency_key(payment.id, refund.id, refund.amount, refund.currency),
        )
        result = await call_gateway(
            gateway,
            "refund",
            lambda: gateway.refund(gateway_req),
            lambda error: GatewayRefundResult(success=False, error=error, retryable=True),
        )

        payment, refund, events = await self._settle(refund, result)

        emit_events(events)
        if not result.success:
            logger.warning(
                "refund_rejected",
                payment_id=payment.id,
                refund_id=refund.id,
                error=result.error,
            )
            raise GatewayRejectedException(
                payment.gateway_id,
                result.error,
                retryable=result.retryable,
                payment_id=payment.id,
                refund_id=refund.id,
            )

        logger.info(
            "refund_completed",
            payment_id=payment.id,
            refund_id=refund.id,
            payment_status=payment.status.value,
        )
        return RefundResponse(
            refund_id=refund.id,
            status=refund.status.value,
            amount=refund.amount,
            currency=refund.currency,
            payment_status=payment.status,
        )

    async def _settle(self, refund: Refund, result: GatewayRefundResult) -> tuple[Payment, Refund, list]:
        """
        落库网关退款结果

        网关已经执行，这里不再获取支付锁：pending 退款已预占余额，
        结算只依赖支付行锁。存储异常按短退避重试，业务异常直接抛出。
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settle_attempts),
                wait=wait_exponential(multiplier=0.05, max=1.0),
                retry=retry_if_not_exception_type(BusinessException),
                reraise=True,
            ):
                with attempt:
                    async with self._uow_factory() as uow:
                        domain_service = build_domain_service(uow)
                        payment, settled, _entry = await domain_service.settle_refund(
                            refund.id,
                            succeeded=result.success,
                            gateway_refund_id=result.gateway_refund_id,
                            gateway_response=result.gateway_response,
                            reason=result.error,
                        )
                        events = domain_service.clear_events()
                    return payment, settled, events
        except Exception:
            logger.error(
                "refund_settlement_failed",
                payment_id=refund.payment_id,
                refund_id=refund.id,
                gateway_succeeded=result.success,
                gateway_refund_id=result.gateway_refund_id,
                exc_info=True,
            )
            raise

    async def record_provider_refund(
        self,
        payment_id: int,
        *,
        amount=None,
        gateway_refund_id: Optional[str] = None,
        reason: Optional[str] = None,
        gateway_response: Optional[dict] = None,
    ) -> Optional[RefundResponse]:
        """
        记录网关侧已完成的退款（webhook payment.refunded）

        不再调用网关：预占与结算在同一事务内完成，账本追加 refund 记录，
        全额退款时支付 -> refunded。未给出金额时按剩余可退余额处理。
        同一 gateway_refund_id 已记录过（例如本服务发起的退款回执）时返回 None。
        """
        try:
            refund_reason = RefundReason(reason) if reason else RefundReason.CUSTOMER_REQUEST
        except ValueError:
            refund_reason = RefundReason.CUSTOMER_REQUEST

        async with self._locks.lock(payment_lock_key(payment_id)):
            async with self._uow_factory() as uow:
                domain_service = build_domain_service(uow)
                payment = await domain_service.get_payment(payment_id, for_update=True)
                if gateway_refund_id:
                    for known in await uow.refund_repository.list_by_payment(payment.id):
                        if known.gateway_refund_id == gateway_refund_id:
                            logger.info(
                                "provider_refund_already_recorded",
                                payment_id=payment.id,
                                refund_id=known.id,
                                gateway_refund_id=gateway_refund_id,
                            )
                            return None
                if amount is None:
                    amount = (await domain_service.refundable_balance(payment)).available
                payment, refund = await domain_service.reserve_refund(
                    payment.id,
                    amount=amount,
                    reason=refund_reason,
                    notes="Refund initiated by provider",
                )
                payment, refund, _entry = await domain_service.settle_refund(
                    refund.id,
                    succeeded=True,
                    gateway_refund_id=gateway_refund_id,
                    gateway_response=gateway_response,
                    reason=None,
                )
                events = domain_service.clear_events()

        emit_events(events)
        logger.info(
            "provider_refund_recorded",
            payment_id=payment.id,
            refund_id=refund.id,
            amount=str(refund.amount),
            payment_status=payment.status.value,
        )
        return RefundResponse(
            refund_id=refund.id,
            status=refund.status.value,
            amount=refund.amount,
            currency=refund.currency,
            payment_status=payment.status,
        )

    async def list_refunds(
        self,
        payment_id: int,
        requester_id: Optional[str] = None,
        *,
        is_operator: bool = False,
    ) -> list[RefundDTO]:
        async with self._uow_factory(readonly=True) as uow:
            domain_service = build_domain_service(uow)
            payment = await domain_service.get_payment(payment_id)
            if not is_operator and requester_id is not None and payment.payer_id != requester_id:
                raise UnauthorizedException(
                    "Payment does not belong to the requester",
                    details={"payment_id": payment_id},
                )
            refunds = await uow.refund_repository.list_by_payment(payment.id)
        return [RefundDTO.from_entity(r) for r in refunds]
