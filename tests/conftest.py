"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.

The in-memory unit of work below stages writes per transaction and merges
them on commit, so service tests see the same commit/rollback boundaries
as the SQLAlchemy implementation without a database.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
# Never reach a real database from the test suite
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

import copy
import dataclasses
import itertools
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Optional

import pytest

from application.services.gateway_registry import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundService
from application.services.webhook_service import PaymentWebhookService
from core.settings import GatewayConfig
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.collaborators import (
    CustomerInfo,
    OrderInfo,
    OrderStore,
    PaymentMethodInfo,
    PaymentMethodStore,
)
from domain.payment.entity import ACTIVE_PAYMENT_STATUSES, RefundStatus
from domain.payment.exceptions import (
    OrderNotFoundException,
    PaymentAlreadyExistsException,
    PaymentConcurrentUpdateException,
    PaymentNotFoundException,
    RefundNotFoundException,
)
from domain.payment.money import sum_amounts
from domain.payment.repository import (
    LedgerRepository,
    PaymentRepository,
    RefundRepository,
    WebhookDeliveryRepository,
)
from infrastructure.external.payments.sandbox_client import SandboxGateway
from infrastructure.locks import InProcessLockProvider


WEBHOOK_SECRET = "whsec_test"


class FakeDatabase:
    """Committed rows shared by every unit of work of one test."""

    def __init__(self) -> None:
        self.tables: dict[str, dict] = defaultdict(dict)
        self._sequences = defaultdict(lambda: itertools.count(1))
        self.commits = 0

    def next_id(self, table: str) -> int:
        return next(self._sequences[table])

    def add_order(self, order_id: str, owner_id: str, amount: str, currency: str = "USD", status: str = "pending"):
        self.tables["orders"][order_id] = OrderInfo(
            id=order_id, owner_id=owner_id, amount=Decimal(amount), currency=currency, status=status
        )

    def add_method(self, method_id: str, gateway_id: str, owner_id: Optional[str] = None, phone: Optional[str] = None):
        self.tables["payment_methods"][method_id] = PaymentMethodInfo(
            id=method_id,
            gateway_id=gateway_id,
            owner_id=owner_id,
            customer=CustomerInfo(name="Ada Buyer", email="ada@example.com", phone=phone),
        )

    def order(self, order_id: str) -> OrderInfo:
        return self.tables["orders"][order_id]

    def payment(self, payment_id: int):
        return copy.deepcopy(self.tables["payments"][payment_id])

    @property
    def ledger(self) -> list:
        return [row for _, row in sorted(self.tables["ledger"].items())]

    @property
    def refunds(self) -> list:
        return [row for _, row in sorted(self.tables["refunds"].items())]


class _StagedTable:
    """Reads see committed rows overlaid with this transaction's writes."""

    def __init__(self, db: FakeDatabase, name: str) -> None:
        self._db = db
        self._name = name
        self._staged: dict = {}

    def get(self, key):
        row = self._staged.get(key, self._db.tables[self._name].get(key))
        return copy.deepcopy(row)

    def put(self, key, row) -> None:
        self._staged[key] = copy.deepcopy(row)

    def values(self) -> list:
        merged = {**self._db.tables[self._name], **self._staged}
        return [copy.deepcopy(row) for _, row in sorted(merged.items(), key=lambda kv: str(kv[0]))]

    def flush(self) -> None:
        self._db.tables[self._name].update(self._staged)
        self._staged.clear()

    def discard(self) -> None:
        self._staged.clear()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakePaymentRepository(PaymentRepository):
    def __init__(self, db: FakeDatabase, table: _StagedTable) -> None:
        self._db = db
        self._table = table

    async def create(self, payment):
        for existing in self._table.values():
            if existing.order_id == payment.order_id and existing.status in ACTIVE_PAYMENT_STATUSES:
                raise PaymentAlreadyExistsException(payment.order_id)
        payment = copy.deepcopy(payment)
        payment.id = self._db.next_id("payments")
        payment.created_at = payment.created_at or _now()
        self._table.put(payment.id, payment)
        return copy.deepcopy(payment)

    async def get_by_id(self, payment_id):
        return self._table.get(payment_id)

    async def get_for_update(self, payment_id):
        return self._table.get(payment_id)

    async def get_active_by_order_id(self, order_id):
        for payment in self._table.values():
            if payment.order_id == order_id and payment.status in ACTIVE_PAYMENT_STATUSES:
                return payment
        return None

    async def get_by_gateway_reference(self, gateway_id, reference):
        matches = [
            p for p in self._table.values()
            if p.gateway_id == gateway_id and reference in (p.transaction_id, p.gateway_transaction_id)
        ]
        return max(matches, key=lambda p: p.id) if matches else None

    def _matches(self, payment, query) -> bool:
        if payment.payer_id != query.payer_id:
            return False
        if query.status is not None and payment.status != query.status:
            return False
        if query.start_date is not None and payment.created_at < query.start_date:
            return False
        if query.end_date is not None and payment.created_at > query.end_date:
            return False
        if query.min_amount is not None and payment.amount < query.min_amount:
            return False
        if query.max_amount is not None and payment.amount > query.max_amount:
            return False
        return True

    async def list_history(self, query, skip=0, limit=20):
        items = [p for p in self._table.values() if self._matches(p, query)]
        items.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return items[skip:skip + limit]

    async def count_history(self, query):
        return sum(1 for p in self._table.values() if self._matches(p, query))

    async def update(self, payment, *, expected_status=None):
        stored = self._table.get(payment.id)
        if stored is None:
            raise PaymentNotFoundException(payment.id)
        if expected_status is not None and stored.status != expected_status:
            raise PaymentConcurrentUpdateException(payment.id, expected_status.value)
        self._table.put(payment.id, payment)
        return self._table.get(payment.id)


class FakeRefundRepository(RefundRepository):
    def __init__(self, db: FakeDatabase, table: _StagedTable) -> None:
        self._db = db
        self._table = table

    async def create(self, refund):
        refund = copy.deepcopy(refund)
        refund.id = self._db.next_id("refunds")
        self._table.put(refund.id, refund)
        return copy.deepcopy(refund)

    async def get_by_id(self, refund_id):
        return self._table.get(refund_id)

    async def list_by_payment(self, payment_id):
        return [r for r in self._table.values() if r.payment_id == payment_id]

    async def get_pending_amount(self, payment_id):
        return sum_amounts(
            r.amount for r in self._table.values()
            if r.payment_id == payment_id and r.status == RefundStatus.PENDING
        )

    async def update(self, refund):
        stored = self._table.get(refund.id)
        if stored is None or stored.status != RefundStatus.PENDING:
            raise RefundNotFoundException(refund.id)
        self._table.put(refund.id, refund)
        return self._table.get(refund.id)


class FakeLedgerRepository(LedgerRepository):
    def __init__(self, db: FakeDatabase, table: _StagedTable) -> None:
        self._db = db
        self._table = table

    async def append(self, entry):
        entry = dataclasses.replace(entry, id=self._db.next_id("ledger"), created_at=_now())
        self._table.put(entry.id, entry)
        return entry

    async def list_by_payment(self, payment_id, type=None, status=None):
        entries = sorted(self._table.values(), key=lambda e: e.id)
        return [
            e for e in entries
            if e.payment_id == payment_id
            and (type is None or e.type == type)
            and (status is None or e.status == status)
        ]


class FakeWebhookRepository(WebhookDeliveryRepository):
    def __init__(self, db: FakeDatabase, table: _StagedTable) -> None:
        self._db = db
        self._table = table

    async def create(self, event):
        key = (event.gateway_id, event.event_id)
        if self._table.get(key) is not None:
            raise ValueError(f"duplicate webhook delivery {key}")
        event = copy.deepcopy(event)
        event.id = self._db.next_id("webhooks")
        self._table.put(key, event)
        return copy.deepcopy(event)

    async def get_by_event_id(self, gateway_id, event_id):
        return self._table.get((gateway_id, event_id))

    async def update(self, event):
        self._table.put((event.gateway_id, event.event_id), event)
        return event


class FakeOrderStore(OrderStore):
    def __init__(self, table: _StagedTable) -> None:
        self._table = table

    async def get(self, order_id):
        return self._table.get(order_id)

    async def set_status(self, order_id, status):
        order = self._table.get(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        self._table.put(order_id, dataclasses.replace(order, status=status))


class FakePaymentMethodStore(PaymentMethodStore):
    def __init__(self, table: _StagedTable) -> None:
        self._table = table

    async def get(self, payment_method_id):
        return self._table.get(payment_method_id)


class FakeUnitOfWork(AbstractUnitOfWork):
    """In-memory unit of work: staged writes are merged on commit, dropped on rollback."""

    def __init__(self, db: FakeDatabase, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._db = db
        self._tables: list[_StagedTable] = []

    def _table(self, name: str) -> _StagedTable:
        table = _StagedTable(self._db, name)
        self._tables.append(table)
        return table

    async def __aenter__(self) -> "FakeUnitOfWork":
        self._tables = []
        self.payment_repository = FakePaymentRepository(self._db, self._table("payments"))
        self.refund_repository = FakeRefundRepository(self._db, self._table("refunds"))
        self.ledger_repository = FakeLedgerRepository(self._db, self._table("ledger"))
        self.webhook_repository = FakeWebhookRepository(self._db, self._table("webhooks"))
        self.orders = FakeOrderStore(self._table("orders"))
        self.payment_methods = FakePaymentMethodStore(self._table("payment_methods"))
        return self

    async def commit(self) -> None:
        if not self._readonly:
            for table in self._tables:
                table.flush()
            self._db.commits += 1
        self._committed = True

    async def rollback(self) -> None:
        for table in self._tables:
            table.discard()
        self._committed = False


@pytest.fixture
def db() -> FakeDatabase:
    database = FakeDatabase()
    database.add_order("ord_1", owner_id="buyer_1", amount="100.00")
    database.add_order("ord_2", owner_id="buyer_1", amount="25.50")
    database.add_method("pm_1", gateway_id="sandbox", owner_id="buyer_1", phone="+254700000001")
    return database


@pytest.fixture
def uow_factory(db):
    return partial(FakeUnitOfWork, db)


@pytest.fixture
def sandbox() -> SandboxGateway:
    return SandboxGateway(GatewayConfig(id="sandbox", provider="sandbox", webhook_secret=WEBHOOK_SECRET))


@pytest.fixture
def registry(sandbox) -> GatewayRegistry:
    gateways = GatewayRegistry()
    gateways.register(sandbox, name="Sandbox")
    return gateways


@pytest.fixture
def locks() -> InProcessLockProvider:
    return InProcessLockProvider(blocking_timeout=5)


@pytest.fixture
def payment_service(uow_factory, registry, locks) -> PaymentService:
    return PaymentService(uow_factory, registry, locks)


@pytest.fixture
def refund_service(uow_factory, registry, locks) -> RefundService:
    return RefundService(uow_factory, registry, locks)


@pytest.fixture
def webhook_service(uow_factory, registry, locks, payment_service, refund_service) -> PaymentWebhookService:
    return PaymentWebhookService(uow_factory, registry, locks, payment_service, refund_service)
