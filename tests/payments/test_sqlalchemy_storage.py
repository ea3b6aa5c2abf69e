from decimal import Decimal
from functools import partial

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import InitiatePaymentRequest, RefundPaymentRequest
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundService
from domain.payment.entity import PaymentStatus, RefundReason
from domain.payment.exceptions import (
    GatewayRejectedException,
    PaymentAlreadyExistsException,
    PaymentConcurrentUpdateException,
)
from domain.payment.repository import PaymentHistoryQuery
from infrastructure.database import create_tables
from infrastructure.models import OrderModel, PaymentMethodModel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(bind=engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all([
            OrderModel(id="ord_1", buyer_id="buyer_1", total_amount=Decimal("100.00"), currency="USD", status="pending"),
            PaymentMethodModel(id="pm_1", owner_id="buyer_1", gateway_id="sandbox", customer_email="ada@example.com"),
        ])
        await session.commit()
    yield factory
    await engine.dispose()


@pytest.fixture
def sql_uow_factory(session_factory):
    return partial(SQLAlchemyUnitOfWork, session_factory)


async def _order_status(session_factory, order_id: str) -> str:
    async with session_factory() as session:
        result = await session.execute(select(OrderModel.status).where(OrderModel.id == order_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_payment_lifecycle_against_sqlite(session_factory, sql_uow_factory, registry, locks):
    payments = PaymentService(sql_uow_factory, registry, locks)
    refunds = RefundService(sql_uow_factory, registry, locks)

    initiated = await payments.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )
    processed = await payments.process_payment(initiated.payment_id)
    assert processed.status == PaymentStatus.COMPLETED
    assert await _order_status(session_factory, "ord_1") == "confirmed"

    refund = await refunds.request_refund(
        initiated.payment_id,
        RefundPaymentRequest(amount=Decimal("40.00"), reason=RefundReason.DUPLICATE),
        "buyer_1",
    )
    assert refund.payment_status == PaymentStatus.COMPLETED

    status = await payments.get_payment_status(initiated.payment_id, "buyer_1")
    assert status.amount == Decimal("100.00")
    assert status.refunded_amount == Decimal("40.00")

    transactions = await payments.list_transactions(initiated.payment_id)
    assert [(t.type, t.status, t.amount) for t in transactions] == [
        ("charge", "completed", Decimal("100.00")),
        ("refund", "completed", Decimal("40.00")),
    ]
    assert transactions[1].refund_id == refund.refund_id

    items, total = await payments.list_payment_history(PaymentHistoryQuery(payer_id="buyer_1"))
    assert total == 1
    assert items[0].refunds[0].amount == Decimal("40.00")


@pytest.mark.asyncio
async def test_failed_payment_releases_the_order(sql_uow_factory, registry, locks, sandbox):
    payments = PaymentService(sql_uow_factory, registry, locks)
    request = InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1")
    sandbox.script("initiate", "decline")

    with pytest.raises(GatewayRejectedException):
        await payments.initiate_payment(request, "buyer_1")
    second = await payments.initiate_payment(request, "buyer_1")

    with pytest.raises(PaymentAlreadyExistsException):
        await payments.initiate_payment(request, "buyer_1")
    assert second.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unique_active_payment_per_order_in_storage(sql_uow_factory, registry, locks):
    payments = PaymentService(sql_uow_factory, registry, locks)
    initiated = await payments.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )

    async with sql_uow_factory() as uow:
        existing = await uow.payment_repository.get_by_id(initiated.payment_id)

    # bypass the domain check: the storage constraint still refuses a second active payment
    existing.id = None
    with pytest.raises(PaymentAlreadyExistsException):
        async with sql_uow_factory() as uow:
            await uow.payment_repository.create(existing)


@pytest.mark.asyncio
async def test_status_compare_and_set(sql_uow_factory, registry, locks):
    payments = PaymentService(sql_uow_factory, registry, locks)
    initiated = await payments.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )

    async with sql_uow_factory() as uow:
        payment = await uow.payment_repository.get_for_update(initiated.payment_id)
        payment.mark_processing()
        await uow.payment_repository.update(payment, expected_status=PaymentStatus.PENDING)

    with pytest.raises(PaymentConcurrentUpdateException):
        async with sql_uow_factory() as uow:
            stale = await uow.payment_repository.get_by_id(initiated.payment_id)
            stale.mark_completed()
            await uow.payment_repository.update(stale, expected_status=PaymentStatus.PENDING)

    async with sql_uow_factory(readonly=True) as uow:
        current = await uow.payment_repository.get_by_id(initiated.payment_id)
    assert current.status == PaymentStatus.PROCESSING


@pytest.mark.asyncio
async def test_gateway_reference_lookup(sql_uow_factory, registry, locks):
    payments = PaymentService(sql_uow_factory, registry, locks)
    initiated = await payments.initiate_payment(
        InitiatePaymentRequest(order_id="ord_1", payment_method_id="pm_1"), "buyer_1"
    )

    async with sql_uow_factory(readonly=True) as uow:
        by_txn = await uow.payment_repository.get_by_gateway_reference("sandbox", initiated.transaction_id)
        other_gateway = await uow.payment_repository.get_by_gateway_reference("card", initiated.transaction_id)

    assert by_txn.id == initiated.payment_id
    assert other_gateway is None
