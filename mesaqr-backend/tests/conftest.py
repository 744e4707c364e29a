import hashlib
import hmac
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_mesaqr")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_0123456789abcdef")
os.environ.setdefault("STRIPE_PRICE_ID_PRO", "price_pro_monthly")
os.environ.setdefault("STRIPE_PRICE_ID_PRO_ANNUAL", "price_pro_annual")
os.environ.setdefault("STRIPE_PRICE_ID_PREMIUM", "price_premium_monthly")
os.environ.setdefault("STRIPE_PRICE_ID_PREMIUM_ANNUAL", "price_premium_annual")
os.environ.setdefault("WOMPI_PRIVATE_KEY", "prv_test_mesaqr")
os.environ.setdefault("WOMPI_PUBLIC_KEY", "pub_test_mesaqr")
os.environ.setdefault("WOMPI_EVENTS_SECRET", "wompi_events_test_0123456789")
os.environ.setdefault("WOMPI_PAYMENT_LINK_PRO_MONTHLY", "https://checkout.wompi.co/l/pro_monthly")
os.environ.setdefault("WOMPI_PAYMENT_LINK_PREMIUM_MONTHLY", "https://checkout.wompi.co/l/premium_monthly?source=app")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import models  # noqa: E402
from app.db import Base, get_db, settings  # noqa: E402
from app.main import app  # noqa: E402
from app.services.billing_notifications import get_notifier  # noqa: E402
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway  # noqa: E402
from app.services.wompi import WompiClient, get_wompi_client  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "webhook: inbound provider webhook tests")
    config.addinivalue_line("markers", "payment: synchronous charge tests")


class RecordingNotifier:
    def __init__(self):
        self.confirmations = []
        self.alerts = []

    def send_payment_confirmation(self, confirmation):
        self.confirmations.append(confirmation)
        return True

    async def alert_unmatched_event(self, event):
        self.alerts.append(event)


def stripe_signature_header(payload: str, secret: str, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_tenant(db):
    def _make(
        tenant_id: str | None = None,
        *,
        name: str = "La Mesa de Prueba",
        contact_email: str | None = "owner@lamesa.co",
        contact_phone: str | None = "3001234567",
        billing_state: models.SubscriptionStatus = models.SubscriptionStatus.active,
        deleted: bool = False,
    ) -> models.Tenant:
        tenant_id = tenant_id or str(uuid.uuid4())
        tenant = models.Tenant(
            id=tenant_id,
            name=name,
            slug=f"slug-{tenant_id}",
            contact_email=contact_email,
            contact_phone=contact_phone,
            billing_state=billing_state,
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        db.add(tenant)
        db.commit()
        return tenant

    return _make


@pytest.fixture
def make_subscription(db):
    def _make(
        tenant: models.Tenant,
        *,
        plan_type: models.PlanType = models.PlanType.free,
        status: models.SubscriptionStatus = models.SubscriptionStatus.active,
        billing_period: models.BillingPeriod = models.BillingPeriod.monthly,
        external_provider: models.PaymentProvider | None = None,
        external_id: str | None = None,
        external_customer_id: str | None = None,
        created_at: datetime | None = None,
    ) -> models.Subscription:
        subscription = models.Subscription(
            id=str(uuid.uuid4()),
            tenant_id=tenant.id,
            plan_type=plan_type,
            status=status,
            billing_period=billing_period,
            external_provider=external_provider,
            external_id=external_id,
            external_customer_id=external_customer_id,
        )
        if created_at is not None:
            subscription.created_at = created_at
        db.add(subscription)
        db.commit()
        return subscription

    return _make


@pytest.fixture
def minutes_ago():
    def _at(minutes: int) -> datetime:
        return datetime.now(timezone.utc) - timedelta(minutes=minutes)

    return _at


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stripe_gateway():
    return Mock(spec=StripeGateway)


@pytest.fixture
def wompi_client():
    return Mock(spec=WompiClient)


@pytest.fixture
def config():
    return settings


@pytest.fixture
def client(db, notifier, stripe_gateway, wompi_client):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[get_wompi_client] = lambda: wompi_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
