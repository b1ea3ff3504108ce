import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_engine.db import Base
from billing_engine.models import (
    BillingCycle,
    BillingCycleStatus,
    BillingInterval,
    OverageBilling,
    SubscriptionStatus,
    TenantSubscription,
)
from billing_engine.services.billing_lifecycle import (
    BillingCycleProcessor,
    DbSubscriptionProvider,
    OverageBiller,
    PaymentAttemptExecutor,
    RetryPolicy,
    SubscriptionInvoiceGenerator,
    SubscriptionSuspensionHandler,
)
from tests.mocks import FakeClock, FakePaymentGateway


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def file_engine(tmp_path):
    """File-backed SQLite shared by several connections.

    Transactions start with BEGIN IMMEDIATE so concurrent writers queue on the
    database lock instead of failing with "database is locked".
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 2, 1, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def gateway():
    return FakePaymentGateway()


@pytest.fixture()
def provider():
    return DbSubscriptionProvider()


@pytest.fixture()
def processor(provider, gateway, clock):
    return BillingCycleProcessor(
        provider,
        SubscriptionInvoiceGenerator(tax_rate=Decimal("0.00"), due_days=14),
        PaymentAttemptExecutor(gateway),
        RetryPolicy([24, 72, 168], max_retries=3),
        SubscriptionSuspensionHandler(provider),
        escalation_emails=["billing@company.com"],
        upcoming_notice_days=7,
        clock=clock,
    )


@pytest.fixture()
def overage_biller(provider, gateway, clock):
    return OverageBiller(
        provider,
        PaymentAttemptExecutor(gateway),
        tax_rate=Decimal("0.10"),
        due_days=7,
        clock=clock,
    )


@pytest.fixture()
def subscription(db_session):
    subscription = TenantSubscription(
        tenant_id=f"tenant-{uuid.uuid4().hex[:8]}",
        plan_name="Pro",
        plan_price=Decimal("49.00"),
        currency="USD",
        billing_interval=BillingInterval.monthly,
        status=SubscriptionStatus.active,
        customer_id="cus_123",
        payment_provider="fakepay",
        current_period_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
        current_period_end=datetime(2024, 1, 31, tzinfo=timezone.utc),
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def make_cycle(db_session):
    def _make(subscription, **kwargs):
        values = {
            "tenant_id": subscription.tenant_id,
            "subscription_id": subscription.id,
            "cycle_start": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "cycle_end": datetime(2024, 1, 31, tzinfo=timezone.utc),
            "status": BillingCycleStatus.scheduled,
            "retry_count": 0,
        }
        values.update(kwargs)
        cycle = BillingCycle(**values)
        db_session.add(cycle)
        db_session.commit()
        db_session.refresh(cycle)
        return cycle

    return _make


@pytest.fixture()
def make_overage(db_session):
    def _make(subscription, **kwargs):
        values = {
            "tenant_id": subscription.tenant_id,
            "subscription_id": subscription.id,
            "resource_type": "api_calls",
            "quota_limit": Decimal("1000"),
            "actual_usage": Decimal("1500"),
            "overage_amount": Decimal("500"),
            "unit_price": Decimal("0.01"),
            "billing_period_start": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "billing_period_end": datetime(2024, 1, 31, tzinfo=timezone.utc),
        }
        values.update(kwargs)
        overage = OverageBilling(**values)
        db_session.add(overage)
        db_session.commit()
        db_session.refresh(overage)
        return overage

    return _make
