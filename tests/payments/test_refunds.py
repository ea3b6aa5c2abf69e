import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from application.dtos.payments import InitiatePaymentRequest, RefundPaymentRequest
from application.services.refund_service import RefundService
from domain.common.exceptions import InvalidAmountException, LockTimeoutException, UnauthorizedException
from domain.payment.entity import (
    PaymentStatus,
    RefundReason,
    RefundStatus,
    TransactionStatus,
    TransactionType,
)
from domain.payment.exceptions import (
    GatewayRejectedException,
    PaymentNotRefundableException,
    RefundExceedsBalanceException,
)


def _refund(amount: str, reason: RefundReason = RefundReason.CUSTOMER_REQUEST) -> RefundPaymentRequest:
    return RefundPaymentRequest(amount=Decimal(amount), reason=reason)


@pytest.fixture
async def completed_payment_id(payment_service) -> int:
    initiated = await payment_service.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )
    await payment_service.process_payment(initiated.payment_id)
    return initiated.payment_id


def _refund_entries(db) -> list:
    return [e for e in db.ledger if e.type == TransactionType.REFUND]


@pytest.mark.asyncio
async def test_partial_refunds_until_fully_refunded(refund_service, payment_service, db, completed_payment_id):
    first = await refund_service.request_refund(completed_payment_id, _refund("40.00"), "buyer_1")
    assert first.status == "completed"
    assert first.amount == Decimal("40.00")
    assert first.payment_status == PaymentStatus.COMPLETED

    with pytest.raises(RefundExceedsBalanceException) as exc_info:
        await refund_service.request_refund(completed_payment_id, _refund("70.00"), "buyer_1")
    assert exc_info.value.error_type == "ExceedsBalance"
    assert exc_info.value.details["available"] == "60.00"
    assert exc_info.value.details["refunded"] == "40.00"

    last = await refund_service.request_refund(completed_payment_id, _refund("60.00"), "buyer_1")
    assert last.payment_status == PaymentStatus.REFUNDED

    status = await payment_service.get_payment_status(completed_payment_id, "buyer_1")
    assert status.status == PaymentStatus.REFUNDED
    assert status.refunded_amount == Decimal("100.00")
    assert [e.amount for e in _refund_entries(db)] == [Decimal("40.00"), Decimal("60.00")]

    with pytest.raises(PaymentNotRefundableException):
        await refund_service.request_refund(completed_payment_id, _refund("1.00"), "buyer_1")


@pytest.mark.asyncio
async def test_concurrent_refunds_cannot_overdraw(refund_service, sandbox, db, completed_payment_id):
    sandbox.configure(latency=0.02)

    results = await asyncio.gather(
        refund_service.request_refund(completed_payment_id, _refund("60.00"), "buyer_1"),
        refund_service.request_refund(completed_payment_id, _refund("60.00"), "buyer_1"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, RefundExceedsBalanceException)]
    assert len(succeeded) == 1
    assert len(rejected) == 1
    # the in-flight refund was reserved while the second request was checked
    assert rejected[0].details["pending"] == "60.00"
    assert sandbox.call_count("refund") == 1
    assert sum(e.amount for e in _refund_entries(db) if e.status == TransactionStatus.COMPLETED) == Decimal("60.00")


@pytest.mark.asyncio
async def test_refund_requires_completed_payment(refund_service, payment_service, sandbox):
    initiated = await payment_service.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )

    with pytest.raises(PaymentNotRefundableException) as exc_info:
        await refund_service.request_refund(initiated.payment_id, _refund("10.00"), "buyer_1")

    assert exc_info.value.error_type == "NotCompleted"
    assert exc_info.value.details["status"] == "pending"
    assert sandbox.call_count("refund") == 0


@pytest.mark.asyncio
async def test_non_positive_refund_is_rejected_before_storage(refund_service, db):
    zero = RefundPaymentRequest.model_construct(amount=Decimal("0"), reason=RefundReason.CUSTOMER_REQUEST, notes=None)
    commits = db.commits

    with pytest.raises(InvalidAmountException):
        await refund_service.request_refund(12345, zero, "buyer_1")
    assert db.commits == commits


@pytest.mark.asyncio
async def test_refund_with_too_many_decimals(refund_service, db, completed_payment_id):
    with pytest.raises(InvalidAmountException):
        await refund_service.request_refund(completed_payment_id, _refund("10.005"), "buyer_1")
    assert db.refunds == []


@pytest.mark.asyncio
async def test_gateway_refusal_fails_refund_and_releases_balance(refund_service, sandbox, db, completed_payment_id):
    sandbox.script("refund", "decline")

    with pytest.raises(GatewayRejectedException) as exc_info:
        await refund_service.request_refund(completed_payment_id, _refund("100.00"), "buyer_1")

    assert exc_info.value.retryable is False
    refund_id = exc_info.value.details["refund_id"]
    refunds = await refund_service.list_refunds(completed_payment_id, "buyer_1")
    assert [(r.id, r.status) for r in refunds] == [(refund_id, "failed")]
    assert refunds[0].failure_reason == "Sandbox refused the refund"
    assert db.payment(completed_payment_id).status == PaymentStatus.COMPLETED
    assert [e.status for e in _refund_entries(db)] == [TransactionStatus.FAILED]

    # failed refunds do not count against the balance
    retry = await refund_service.request_refund(completed_payment_id, _refund("100.00"), "buyer_1")
    assert retry.payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_adapter_crash_is_settled_as_failed(refund_service, sandbox, db, completed_payment_id):
    sandbox.script("refund", "raise")

    with pytest.raises(GatewayRejectedException) as exc_info:
        await refund_service.request_refund(completed_payment_id, _refund("10.00"), "buyer_1")

    assert exc_info.value.retryable is True
    assert [r.status for r in db.refunds] == [RefundStatus.FAILED]
    assert len(_refund_entries(db)) == 1


@pytest.mark.asyncio
async def test_only_payer_or_operator_can_refund(refund_service, completed_payment_id):
    with pytest.raises(UnauthorizedException):
        await refund_service.request_refund(completed_payment_id, _refund("10.00"), "buyer_2")
    with pytest.raises(UnauthorizedException):
        await refund_service.list_refunds(completed_payment_id, "buyer_2")

    result = await refund_service.request_refund(
        completed_payment_id,
        _refund("10.00", RefundReason.FRAUDULENT),
        "ops_1",
        is_operator=True,
    )
    assert result.status == "completed"
    refunds = await refund_service.list_refunds(completed_payment_id, "ops_1", is_operator=True)
    assert refunds[0].requested_by == "ops_1"
    assert refunds[0].reason == RefundReason.FRAUDULENT


@pytest.mark.asyncio
async def test_refund_request_carries_stable_idempotency_key(refund_service, sandbox, completed_payment_id):
    await refund_service.request_refund(completed_payment_id, _refund("10.00"), "buyer_1")

    (_, gateway_req), = [call for call in sandbox.calls if call[0] == "refund"]
    assert gateway_req.amount == Decimal("10.00")
    assert gateway_req.transaction_id == f"sbx_txn_{completed_payment_id}"
    assert isinstance(gateway_req.idempotency_key, str) and len(gateway_req.idempotency_key) == 64


class _SingleUseLocks:
    """Grants each key once; a second acquisition times out like a busy lock."""

    def __init__(self) -> None:
        self.acquired: list[str] = []

    @asynccontextmanager
    async def lock(self, key: str):
        if key in self.acquired:
            raise LockTimeoutException(key)
        self.acquired.append(key)
        yield


class _UnreliableStorage:
    """Unit-of-work factory whose listed calls (1-based) fail to open a session."""

    def __init__(self, uow_factory, failing_calls) -> None:
        self._uow_factory = uow_factory
        self._failing_calls = set(failing_calls)
        self.calls = 0

    def __call__(self, **kwargs):
        self.calls += 1
        if self.calls in self._failing_calls:
            return self._unavailable()
        return self._uow_factory(**kwargs)

    @asynccontextmanager
    async def _unavailable(self):
        raise ConnectionError("database unavailable")
        yield


@pytest.mark.asyncio
async def test_settlement_does_not_wait_for_the_payment_lock(uow_factory, registry, sandbox, db, completed_payment_id):
    locks = _SingleUseLocks()
    service = RefundService(uow_factory, registry, locks)

    result = await service.request_refund(completed_payment_id, _refund("40.00"), "buyer_1")

    assert result.status == "completed"
    assert locks.acquired == [f"payment:{completed_payment_id}"]
    assert [r.status for r in db.refunds] == [RefundStatus.COMPLETED]
    assert [e.amount for e in _refund_entries(db)] == [Decimal("40.00")]


@pytest.mark.asyncio
async def test_settlement_retries_transient_storage_errors(uow_factory, registry, locks, sandbox, db, completed_payment_id):
    # call 1 reserves the refund, call 2 is the first settlement attempt
    storage = _UnreliableStorage(uow_factory, failing_calls={2})
    service = RefundService(storage, registry, locks)

    result = await service.request_refund(completed_payment_id, _refund("100.00"), "buyer_1")

    assert result.payment_status == PaymentStatus.REFUNDED
    assert storage.calls == 3
    assert sandbox.call_count("refund") == 1
    assert [r.status for r in db.refunds] == [RefundStatus.COMPLETED]
    assert len(_refund_entries(db)) == 1


@pytest.mark.asyncio
async def test_settlement_gives_up_after_configured_attempts(uow_factory, registry, locks, sandbox, db, completed_payment_id):
    storage = _UnreliableStorage(uow_factory, failing_calls={2, 3})
    service = RefundService(storage, registry, locks, settle_attempts=2)

    with pytest.raises(ConnectionError):
        await service.request_refund(completed_payment_id, _refund("10.00"), "buyer_1")

    assert storage.calls == 3
    assert sandbox.call_count("refund") == 1
    # left reserved for reconciliation
    assert [r.status for r in db.refunds] == [RefundStatus.PENDING]
    assert _refund_entries(db) == []
