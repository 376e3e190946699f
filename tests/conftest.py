"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./test_unused.db")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("OPERATOR_SECRET", "operator-test-secret")
os.environ.setdefault("WEBHOOK__DEDUP_BACKEND", "memory")
os.environ.setdefault("STRIPE__SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE__WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("MERCADOPAGO__ACCESS_TOKEN", "TEST-token")
os.environ.setdefault("MERCADOPAGO__WEBHOOK_SECRET", "mp-webhook-secret")
os.environ.setdefault("PAYPAL__CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL__CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL__WEBHOOK_ID", "WH-TEST")

from decimal import Decimal
from typing import Optional
import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import (
    AccountCapabilities,
    CaptureResult,
    ChargeResult,
    TransferResult,
)
from infrastructure.models import (
    Base,
    AffiliateModel,
    AffiliateCommissionModel,
    CouponModel,
    OrderModel,
)
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    def factory(readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory=session_factory, readonly=readonly)
    return factory


class StubGateway:
    """In-process gateway recording every provider call."""

    requires_source_charge = True

    def __init__(self, provider: str = "stripe"):
        self.provider = provider
        self.charges = []
        self.transfers = []
        self.reversals = []
        self.capability_checks = []
        self.charge_ref: Optional[str] = "ch_resolved"
        self.transfer_error: Optional[Exception] = None
        self.capture_result: Optional[CaptureResult] = None
        self.capabilities = AccountCapabilities(
            account_ref="acct_1", charges_enabled=True, payouts_enabled=True, details_submitted=True
        )
        self.webhook_events = []
        self.webhook_error: Optional[Exception] = None

    async def create_charge(self, req):
        self.charges.append(req)
        return ChargeResult(
            provider=self.provider,
            provider_ref=f"pi_{len(self.charges)}",
            status="pending",
            client_params={"client_secret": "cs_test"},
        )

    async def capture(self, provider_ref, *, idempotency_key=None):
        return self.capture_result

    async def get_status(self, provider_ref):
        return "pending"

    async def resolve_charge_reference(self, provider_ref):
        return self.charge_ref

    async def transfer(self, req):
        self.transfers.append(req)
        if self.transfer_error is not None:
            raise self.transfer_error
        return TransferResult(provider=self.provider, transfer_id=f"tr_{len(self.transfers)}")

    async def reverse_transfer(self, transfer_id, *, amount_minor=None, idempotency_key=None):
        self.reversals.append((transfer_id, amount_minor, idempotency_key))
        return f"trr_{len(self.reversals)}"

    async def get_account_capabilities(self, account_ref):
        self.capability_checks.append(account_ref)
        return self.capabilities

    async def parse_webhook(self, headers, body):
        if self.webhook_error is not None:
            raise self.webhook_error
        return self.webhook_events.pop(0)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def gateway_resolver(gateway):
    def resolve(provider: str):
        return gateway
    return resolve


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def notify_order_paid(self, order_id):
        self.calls.append(("notify_order_paid", order_id))
        return "task-1"

    def enqueue_commission_payout(self, commission_id, *, force=False):
        self.calls.append(("enqueue_commission_payout", commission_id))
        return "task-2"

    def enqueue_transfer_reversal(self, commission_id, transfer_id):
        self.calls.append(("enqueue_transfer_reversal", commission_id, transfer_id))
        return "task-3"


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


class LedgerSeeder:
    """Writes rows straight through the models."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _add(self, model):
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        return model

    async def affiliate(self, **kw) -> AffiliateModel:
        values = dict(
            id=str(uuid.uuid4()),
            code=f"AFF{uuid.uuid4().hex[:6].upper()}",
            name="Ana Lima",
            email="ana@example.com",
            status="active",
            commission_type="percentage",
            commission_value=Decimal("20.00"),
            payout_provider="stripe",
            payout_account_ref="acct_1",
            payout_enabled=True,
            charges_enabled=True,
            details_submitted=True,
        )
        values.update(kw)
        return await self._add(AffiliateModel(**values))

    async def coupon(self, **kw) -> CouponModel:
        values = dict(
            id=str(uuid.uuid4()),
            code="SAVE10",
            discount_type="percentage",
            value=Decimal("10.00"),
            used_count=0,
            is_active=True,
        )
        values.update(kw)
        return await self._add(CouponModel(**values))

    async def order(self, **kw) -> OrderModel:
        total = Decimal(str(kw.pop("total", "100.00")))
        values = dict(
            id=str(uuid.uuid4()),
            email="buyer@example.com",
            subtotal=total,
            discount_amount=Decimal("0.00"),
            total=total,
            currency="USD",
            status="pending",
            payment_status="pending",
            provider="stripe",
            provider_ref=f"pi_{uuid.uuid4().hex[:8]}",
        )
        values.update(kw)
        return await self._add(OrderModel(**values))

    async def paid_order(self, **kw) -> OrderModel:
        kw.setdefault("status", "completed")
        kw.setdefault("payment_status", "paid")
        kw.setdefault("charge_ref", "ch_original")
        return await self.order(**kw)

    async def commission(self, affiliate: AffiliateModel, order: OrderModel, **kw) -> AffiliateCommissionModel:
        rate = Decimal(str(affiliate.commission_value))
        values = dict(
            id=str(uuid.uuid4()),
            affiliate_id=affiliate.id,
            order_id=order.id,
            order_total=order.total,
            commission_type=affiliate.commission_type,
            commission_rate=rate,
            commission_amount=(Decimal(str(order.total)) * rate / Decimal(100)).quantize(Decimal("0.01")),
            currency=order.currency,
            status="approved",
            transfer_status="none",
            transfer_attempt_count=0,
        )
        values.update(kw)
        return await self._add(AffiliateCommissionModel(**values))


@pytest.fixture
def seed(session_factory):
    return LedgerSeeder(session_factory)
