"""
Provider webhook intake.

Verifies the signature through the gateway adapter, records each delivery
once per (gateway, event id), and routes payment outcome events into the
regular process use-case so callbacks and polling share one code path.
Provider-side refunds go through the refund engine without a gateway call,
and cancellations fail a payment that has not completed.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from application.dtos.payments import ProcessPaymentRequest, WebhookAck
from application.ports.locks import LockProvider
from application.services.gateway_registry import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundService
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import WebhookDelivery
from domain.payment.exceptions import (
    GatewayRejectedException,
    PaymentAlreadyCompletedException,
    PaymentInvalidStateException,
    PaymentNotRefundableException,
    RefundExceedsBalanceException,
)


logger = get_logger(__name__)

# Events that carry a payment outcome and are handed to process_payment
PROCESS_EVENT_TYPES = frozenset(
    {"payment.succeeded", "payment.completed", "payment.failed"}
)
REFUND_EVENT_TYPE = "payment.refunded"
CANCEL_EVENT_TYPE = "payment.cancelled"


def _event_amount(value):
    # JSON numbers arrive as float; go through str so Decimal sees the written digits
    if isinstance(value, float):
        return str(value)
    return value


class PaymentWebhookService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_registry: GatewayRegistry,
        lock_provider: LockProvider,
        payment_service: PaymentService,
        refund_service: RefundService,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateway_registry
        self._locks = lock_provider
        self._payments = payment_service
        self._refunds = refund_service

    async def handle(self, gateway_id: str, headers: dict[str, Any], body: bytes) -> WebhookAck:
        gateway = self._gateways.get(gateway_id)
        event = gateway.parse_webhook(headers, body)
        logger.info(
            "payment_webhook_parsed",
            gateway_id=gateway_id,
            event_type=event.type,
            event_id=event.id,
        )

        async with self._locks.lock(f"payment:webhook:{gateway_id}:{event.id}"):
            async with self._uow_factory() as uow:
                delivery = await uow.webhook_repository.get_by_event_id(gateway_id, event.id)
                if delivery is not None and delivery.processed:
                    logger.info("payment_webhook_duplicate", gateway_id=gateway_id, event_id=event.id)
                    return WebhookAck(event_id=event.id, status="duplicate", payment_id=delivery.payment_id)

                payment = None
                if event.transaction_id:
                    payment = await uow.payment_repository.get_by_gateway_reference(
                        gateway_id, event.transaction_id
                    )
                if delivery is None:
                    delivery = await uow.webhook_repository.create(WebhookDelivery(
                        id=None,
                        gateway_id=gateway_id,
                        event_id=event.id,
                        event_type=event.type,
                        payload=event.data,
                        signature=event.signature,
                        payment_id=payment.id if payment else None,
                    ))

            status, error = await self._dispatch(event.type, event.data, payment)

            async with self._uow_factory() as uow:
                delivery = await uow.webhook_repository.get_by_event_id(gateway_id, event.id)
                if status == "deferred":
                    delivery.record_attempt_failure(error)
                else:
                    delivery.mark_processed(error)
                await uow.webhook_repository.update(delivery)

        logger.info(
            "payment_webhook_handled",
            gateway_id=gateway_id,
            event_id=event.id,
            status=status,
            payment_id=payment.id if payment else None,
        )
        return WebhookAck(event_id=event.id, status=status, payment_id=payment.id if payment else None)

    async def _dispatch(self, event_type: str, data: dict, payment) -> tuple[str, Optional[str]]:
        """
        按事件类型分发，返回 (ack 状态, 错误信息)

        deferred：网关结果可重试（超时、5xx、仍在处理中），投递保持未处理，
        提供方重投同一事件时会再次处理。
        """
        if payment is None:
            return "unmatched", "No payment matches the event transaction id"
        if event_type in PROCESS_EVENT_TYPES:
            return await self._process(payment.id, event_type, data)
        if event_type == REFUND_EVENT_TYPE:
            return await self._record_refund(payment.id, data)
        if event_type == CANCEL_EVENT_TYPE:
            return await self._cancel(payment.id, data)
        return "ignored", None

    async def _process(self, payment_id: int, event_type: str, data: dict) -> tuple[str, Optional[str]]:
        try:
            await self._payments.process_payment(
                payment_id,
                ProcessPaymentRequest(callback_data={**data, "event_type": event_type}),
                callback_verified=True,
            )
        except PaymentAlreadyCompletedException:
            return "duplicate", None
        except GatewayRejectedException as exc:
            if exc.retryable:
                return "deferred", exc.message
            return "rejected", exc.message
        except PaymentInvalidStateException as exc:
            return "rejected", exc.message
        return "processed", None

    async def _record_refund(self, payment_id: int, data: dict) -> tuple[str, Optional[str]]:
        try:
            recorded = await self._refunds.record_provider_refund(
                payment_id,
                amount=_event_amount(data.get("amount")),
                gateway_refund_id=data.get("refund_id"),
                reason=data.get("reason"),
                gateway_response=data,
            )
        except (
            PaymentNotRefundableException,
            RefundExceedsBalanceException,
            DomainValidationException,
        ) as exc:
            logger.warning("provider_refund_rejected", payment_id=payment_id, error=exc.message)
            return "rejected", exc.message
        return ("processed", None) if recorded else ("duplicate", None)

    async def _cancel(self, payment_id: int, data: dict) -> tuple[str, Optional[str]]:
        try:
            await self._payments.cancel_payment(payment_id, data.get("reason"))
        except PaymentInvalidStateException:
            return "duplicate", None
        except PaymentAlreadyCompletedException as exc:
            return "rejected", exc.message
        return "processed", None
