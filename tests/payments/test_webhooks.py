import json
import time
from decimal import Decimal

import pytest

from application.dtos.payments import InitiatePaymentRequest, RefundPaymentRequest
from core.settings import GatewayConfig
from domain.payment.entity import (
    PaymentStatus,
    RefundReason,
    RefundStatus,
    TransactionStatus,
    TransactionType,
)
from domain.payment.exceptions import (
    GatewayNotFoundException,
    RefundExceedsBalanceException,
    WebhookSignatureException,
)
from infrastructure.external.payments.base import sign_webhook
from infrastructure.external.payments.sandbox_client import SandboxGateway


SECRET = "whsec_test"


def _event(event_id: str, event_type: str, **data) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": data}).encode()


def _signed_headers(body: bytes, *, secret: str = SECRET, timestamp=None) -> dict:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return {"X-Signature": sign_webhook(secret, ts, body), "X-Timestamp": ts}


async def _pending_payment(payment_service) -> int:
    initiated = await payment_service.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )
    return initiated.payment_id


# --- signature verification ---------------------------------------------------


def test_parse_webhook_accepts_valid_signature(sandbox):
    body = _event("evt_1", "payment.succeeded", transaction_id="sbx_txn_1", amount="100.00")

    event = sandbox.parse_webhook(_signed_headers(body), body)

    assert event.id == "evt_1"
    assert event.type == "payment.succeeded"
    assert event.gateway_id == "sandbox"
    assert event.transaction_id == "sbx_txn_1"
    assert event.data["amount"] == "100.00"


def test_signature_headers_are_case_insensitive(sandbox):
    body = _event("evt_1", "payment.succeeded", reference="REF-1")
    headers = {k.lower(): v for k, v in _signed_headers(body).items()}

    event = sandbox.parse_webhook(headers, body)

    assert event.transaction_id == "REF-1"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda body, headers: (body + b" ", headers),
        lambda body, headers: (body, {**headers, "X-Signature": "0" * 64}),
        lambda body, headers: (body, _signed_headers(body, secret="wrong")),
        lambda body, headers: (body, _signed_headers(body, timestamp=time.time() - 3600)),
        lambda body, headers: (body, {"X-Timestamp": headers["X-Timestamp"]}),
        lambda body, headers: (body, {**headers, "X-Timestamp": "yesterday"}),
    ],
    ids=["tampered-body", "forged-signature", "wrong-secret", "stale", "missing-signature", "bad-timestamp"],
)
def test_parse_webhook_rejects_bad_signatures(sandbox, mutate):
    body = _event("evt_1", "payment.succeeded", transaction_id="sbx_txn_1")
    body, headers = mutate(body, _signed_headers(body))

    with pytest.raises(WebhookSignatureException) as exc_info:
        sandbox.parse_webhook(headers, body)
    assert exc_info.value.error_type == "InvalidSignature"


def test_parse_webhook_without_configured_secret():
    gateway = SandboxGateway(GatewayConfig(id="sandbox-nosecret", provider="sandbox"))
    body = _event("evt_1", "payment.succeeded")

    with pytest.raises(WebhookSignatureException):
        gateway.parse_webhook(_signed_headers(body), body)


def test_parse_webhook_requires_event_id_and_type(sandbox):
    body = json.dumps({"type": "payment.succeeded", "data": {}}).encode()

    with pytest.raises(WebhookSignatureException):
        sandbox.parse_webhook(_signed_headers(body), body)


# --- webhook intake -----------------------------------------------------------


@pytest.mark.asyncio
async def test_success_webhook_completes_payment(webhook_service, payment_service, db):
    payment_id = await _pending_payment(payment_service)
    body = _event("evt_1", "payment.succeeded", transaction_id=f"sbx_txn_{payment_id}")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "processed"
    assert ack.payment_id == payment_id
    assert db.payment(payment_id).status == PaymentStatus.COMPLETED
    assert db.order("ord_1").status == "confirmed"
    delivery = db.tables["webhooks"][("sandbox", "evt_1")]
    assert delivery.processed is True
    assert delivery.payment_id == payment_id


@pytest.mark.asyncio
async def test_redelivered_event_is_acknowledged_once(webhook_service, payment_service, sandbox, db):
    payment_id = await _pending_payment(payment_service)
    body = _event("evt_1", "payment.succeeded", transaction_id=f"sbx_txn_{payment_id}")

    await webhook_service.handle("sandbox", _signed_headers(body), body)
    again = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert again.status == "duplicate"
    assert sandbox.call_count("process") == 1
    assert len(db.ledger) == 1


@pytest.mark.asyncio
async def test_second_success_event_for_completed_payment(webhook_service, payment_service, sandbox, db):
    payment_id = await _pending_payment(payment_service)
    for event_id in ("evt_1", "evt_2"):
        body = _event(event_id, "payment.completed", transaction_id=f"sbx_txn_{payment_id}")
        ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "duplicate"
    assert sandbox.call_count("process") == 1
    assert [e.status for e in db.ledger] == [TransactionStatus.COMPLETED]


@pytest.mark.asyncio
async def test_failure_webhook_fails_payment(webhook_service, payment_service, db):
    payment_id = await _pending_payment(payment_service)
    body = _event("evt_9", "payment.failed", transaction_id=f"sbx_txn_{payment_id}", reason="insufficient_funds")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "rejected"
    assert db.payment(payment_id).status == PaymentStatus.FAILED
    assert db.tables["webhooks"][("sandbox", "evt_9")].error_message == "Sandbox declined the payment"


@pytest.mark.asyncio
async def test_unmatched_and_ignored_events(webhook_service, payment_service, sandbox):
    payment_id = await _pending_payment(payment_service)

    body = _event("evt_a", "payment.succeeded", transaction_id="unknown_txn")
    unmatched = await webhook_service.handle("sandbox", _signed_headers(body), body)
    body = _event("evt_b", "payment.created", transaction_id=f"sbx_txn_{payment_id}")
    ignored = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert unmatched.status == "unmatched"
    assert unmatched.payment_id is None
    assert ignored.status == "ignored"
    assert ignored.payment_id == payment_id
    assert sandbox.call_count("process") == 0


@pytest.mark.asyncio
async def test_invalid_signature_records_nothing(webhook_service, db):
    body = _event("evt_1", "payment.succeeded", transaction_id="sbx_txn_1")

    with pytest.raises(WebhookSignatureException):
        await webhook_service.handle("sandbox", _signed_headers(body, secret="forged"), body)
    assert db.tables["webhooks"] == {}


@pytest.mark.asyncio
async def test_webhook_for_unknown_gateway(webhook_service):
    body = _event("evt_1", "payment.succeeded")

    with pytest.raises(GatewayNotFoundException):
        await webhook_service.handle("nope", _signed_headers(body), body)


@pytest.mark.asyncio
async def test_transient_failure_leaves_event_open_for_redelivery(webhook_service, payment_service, sandbox, db):
    payment_id = await _pending_payment(payment_service)
    body = _event("evt_1", "payment.succeeded", transaction_id=f"sbx_txn_{payment_id}")
    sandbox.script("process", "retryable")

    first = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert first.status == "deferred"
    delivery = db.tables["webhooks"][("sandbox", "evt_1")]
    assert delivery.processed is False
    assert delivery.error_message == "Sandbox timeout"
    assert db.payment(payment_id).status == PaymentStatus.PROCESSING

    again = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert again.status == "processed"
    assert db.payment(payment_id).status == PaymentStatus.COMPLETED
    assert db.tables["webhooks"][("sandbox", "evt_1")].processed is True
    assert sandbox.call_count("process") == 2
    assert [e.status for e in db.ledger] == [TransactionStatus.FAILED, TransactionStatus.COMPLETED]


# --- provider refunds and cancellations ---------------------------------------


async def _completed_payment(payment_service) -> int:
    payment_id = await _pending_payment(payment_service)
    await payment_service.process_payment(payment_id)
    return payment_id


@pytest.mark.asyncio
async def test_refunded_event_records_full_refund(webhook_service, payment_service, sandbox, db):
    payment_id = await _completed_payment(payment_service)
    body = _event(
        "evt_r1", "payment.refunded",
        transaction_id=f"sbx_txn_{payment_id}", amount="100.00", refund_id="re_1", reason="duplicate",
    )

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "processed"
    assert db.payment(payment_id).status == PaymentStatus.REFUNDED
    assert [e.type for e in db.ledger] == [TransactionType.CHARGE, TransactionType.REFUND]
    refund, = db.refunds
    assert refund.status == RefundStatus.COMPLETED
    assert refund.gateway_refund_id == "re_1"
    assert refund.reason == RefundReason.DUPLICATE
    assert sandbox.call_count("refund") == 0

    # same provider refund announced under a new event id
    body = _event("evt_r2", "payment.refunded", transaction_id=f"sbx_txn_{payment_id}", refund_id="re_1")
    again = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert again.status == "duplicate"
    assert len(db.refunds) == 1
    assert len(db.ledger) == 2


@pytest.mark.asyncio
async def test_partial_refund_event_keeps_payment_completed(webhook_service, payment_service, refund_service, db):
    payment_id = await _completed_payment(payment_service)
    # JSON number amount
    body = _event("evt_r1", "payment.refunded", transaction_id=f"sbx_txn_{payment_id}", amount=40.5, refund_id="re_1")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "processed"
    assert db.payment(payment_id).status == PaymentStatus.COMPLETED
    assert db.ledger[-1].amount == Decimal("40.50")

    # the provider refund counts against the balance of later requests
    with pytest.raises(RefundExceedsBalanceException) as exc_info:
        await refund_service.request_refund(
            payment_id, RefundPaymentRequest(amount=Decimal("60.00"), reason=RefundReason.CUSTOMER_REQUEST), "buyer_1"
        )
    assert exc_info.value.details["available"] == "59.50"


@pytest.mark.asyncio
async def test_refund_event_without_amount_refunds_remaining_balance(webhook_service, payment_service, refund_service, db):
    payment_id = await _completed_payment(payment_service)
    await refund_service.request_refund(
        payment_id, RefundPaymentRequest(amount=Decimal("30.00"), reason=RefundReason.CUSTOMER_REQUEST), "buyer_1"
    )
    body = _event("evt_r1", "payment.refunded", transaction_id=f"sbx_txn_{payment_id}", refund_id="re_9")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "processed"
    assert [r.amount for r in db.refunds] == [Decimal("30.00"), Decimal("70.00")]
    assert db.payment(payment_id).status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_event_that_cannot_apply_is_rejected(webhook_service, payment_service, db):
    pending_id = await _pending_payment(payment_service)
    body = _event("evt_r0", "payment.refunded", transaction_id=f"sbx_txn_{pending_id}", amount="10.00")
    not_refundable = await webhook_service.handle("sandbox", _signed_headers(body), body)

    await payment_service.process_payment(pending_id)
    body = _event("evt_r1", "payment.refunded", transaction_id=f"sbx_txn_{pending_id}", amount="150.00")
    over_balance = await webhook_service.handle("sandbox", _signed_headers(body), body)
    body = _event("evt_r2", "payment.refunded", transaction_id=f"sbx_txn_{pending_id}", amount="abc")
    malformed = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert [not_refundable.status, over_balance.status, malformed.status] == ["rejected"] * 3
    assert db.refunds == []
    assert db.payment(pending_id).status == PaymentStatus.COMPLETED
    delivery = db.tables["webhooks"][("sandbox", "evt_r1")]
    assert delivery.processed is True
    assert delivery.error_message


@pytest.mark.asyncio
async def test_cancelled_event_fails_pending_payment(webhook_service, payment_service, sandbox, db):
    payment_id = await _pending_payment(payment_service)
    body = _event("evt_c1", "payment.cancelled", transaction_id=f"sbx_txn_{payment_id}")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "processed"
    payment = db.payment(payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Cancelled by provider"
    assert db.ledger == []
    assert sandbox.call_count("process") == 0

    body = _event("evt_c2", "payment.cancelled", transaction_id=f"sbx_txn_{payment_id}")
    again = await webhook_service.handle("sandbox", _signed_headers(body), body)
    assert again.status == "duplicate"

    # a cancelled payment does not block a new attempt for the order
    retry = await payment_service.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )
    assert retry.payment_id != payment_id


@pytest.mark.asyncio
async def test_cancelled_event_for_completed_payment_is_rejected(webhook_service, payment_service, db):
    payment_id = await _completed_payment(payment_service)
    body = _event("evt_c1", "payment.cancelled", transaction_id=f"sbx_txn_{payment_id}", reason="user_abort")

    ack = await webhook_service.handle("sandbox", _signed_headers(body), body)

    assert ack.status == "rejected"
    assert db.payment(payment_id).status == PaymentStatus.COMPLETED
