import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from billcore.api.deps import get_db as api_get_db
from billcore.clock import FixedClock
from billcore.db import Base
from billcore.models.billing import PlanAllowance, SubscriptionPlan
from billcore.schemas.billing import SubscriptionCreate
from billcore.services.billing.cycle import BillingCycles
from billcore.services.billing.sink import RecordingInvoiceSink

# March 2026 has 31 days; subscriptions in these tests start on the 1st.
PERIOD_START = datetime(2026, 3, 1, tzinfo=UTC)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessions on a file database, for tests that write from several threads."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FixedClock(datetime(2026, 3, 10, 9, 30, tzinfo=UTC))


@pytest.fixture()
def sink():
    return RecordingInvoiceSink()


@pytest.fixture()
def billing(clock, sink):
    return BillingCycles(clock=clock, sink=sink)


@pytest.fixture()
def invoice_service(billing):
    return billing.invoices


@pytest.fixture()
def subscription_service(billing):
    return billing.subscriptions


@pytest.fixture()
def credit_service(billing):
    return billing.credits


@pytest.fixture()
def usage_service(billing):
    return billing.usage


@pytest.fixture()
def proration(billing):
    return billing.proration


@pytest.fixture()
def tenant_id():
    return uuid.uuid4()


# ── Plans and subscriptions ──────────────────────────────


@pytest.fixture()
def make_plan(db_session):
    def _make_plan(
        monthly="49.00",
        yearly="490.00",
        allowances=(),
        name=None,
        is_active=True,
    ):
        plan = SubscriptionPlan(
            name=name or f"plan-{uuid.uuid4().hex[:8]}",
            display_name=(name or "Plan").title(),
            price_monthly=Decimal(monthly),
            price_yearly=Decimal(yearly),
            currency="USD",
            is_active=is_active,
        )
        for usage_type, unit, included, overage_price in allowances:
            plan.allowances.append(
                PlanAllowance(
                    usage_type=usage_type,
                    unit=unit,
                    included_quantity=Decimal(included),
                    overage_unit_price=Decimal(overage_price),
                )
            )
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan

    return _make_plan


@pytest.fixture()
def basic_plan(make_plan):
    return make_plan(
        monthly="49.00",
        yearly="490.00",
        name="basic",
        allowances=[("api_calls", "calls", "1000", "0.01")],
    )


@pytest.fixture()
def premium_plan(make_plan):
    return make_plan(monthly="99.00", yearly="990.00", name="premium")


@pytest.fixture()
def make_subscription(db_session, subscription_service):
    def _make_subscription(plan, tenant=None, **overrides):
        fields = {
            "tenant_id": tenant or uuid.uuid4(),
            "plan_id": plan.id,
            "billing_cycle": "monthly",
            "started_at": PERIOD_START,
        }
        fields.update(overrides)
        return subscription_service.create(db_session, SubscriptionCreate(**fields))

    return _make_subscription


@pytest.fixture()
def subscription(make_subscription, basic_plan, tenant_id):
    return make_subscription(basic_plan, tenant_id)


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, session_factory, clock, sink):
    """Create a test client with database dependency override."""
    from billcore.main import create_app

    app = create_app(session_factory=session_factory, clock=clock, sink=sink)

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
