"""
Test configuration and fixtures for Tideflow Billing.

Provides shared fixtures for unit and integration tests:
- environment configured before the app is imported
- a fresh in-memory SQLite database per test
- a mocked Stripe service and a fully wired service graph around it
- builders for Stripe subscription, invoice and event payloads
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Optional
from uuid import uuid4

# Must be set before app.config.settings is imported
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_ENTERPRISE_PRICE_ID"] = "price_enterprise"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["RECONCILIATION_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient


WEBHOOK_SECRET = "whsec_test_secret"
FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from app.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client (no lifespan)."""
    return TestClient(app)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def database():
    """Create all tables in a fresh in-memory database; dispose after the test."""
    from app.infrastructure.db.database import get_db_manager

    db = get_db_manager()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def company(database):
    """A company row with the free seat ceiling."""
    from app.domain.billing import CompanyBilling
    from app.infrastructure.db.repositories.company_repository import CompanyRepository

    return await CompanyRepository().create(
        CompanyBilling(id=str(uuid4()), name="Acme", billing_email="billing@acme.test")
    )


@pytest.fixture
def create_subscription(database):
    """Factory inserting a subscription for a company."""
    from app.domain.billing import Subscription
    from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository

    async def _create(company_id: str, **fields) -> Subscription:
        return await SubscriptionRepository().create(Subscription(company_id=company_id, **fields))

    return _create


# =============================================================================
# Stripe Fixtures
# =============================================================================

@pytest.fixture
def mock_stripe():
    """StripeService mock: async methods are AsyncMocks, no invoices by default."""
    from app.infrastructure.payments.stripe_service import StripeService

    mock = MagicMock(spec=StripeService)
    mock.list_invoices.return_value = []
    return mock


@pytest.fixture
def services(database, mock_stripe):
    """Reconciliation services wired to the test database and mocked Stripe."""
    from app.infrastructure.db.repositories.company_repository import CompanyRepository
    from app.infrastructure.db.repositories.payment_repository import PaymentRepository
    from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
    from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository
    from app.infrastructure.services.billing_service import BillingService
    from app.infrastructure.services.entity_resolver import EntityResolver
    from app.infrastructure.services.payment_recorder import PaymentRecorder
    from app.infrastructure.services.reconciliation_sweeper import ReconciliationSweeper
    from app.infrastructure.services.subscription_synchronizer import SubscriptionSynchronizer
    from app.infrastructure.services.webhook_handlers import BillingEventHandlers

    subscriptions = SubscriptionRepository()
    payments = PaymentRepository()
    companies = CompanyRepository()

    resolver = EntityResolver(subscriptions, payments, mock_stripe)
    synchronizer = SubscriptionSynchronizer(
        subscriptions,
        companies,
        enterprise_price_id="price_enterprise",
        clock=lambda: FIXED_NOW,
    )
    recorder = PaymentRecorder(payments)
    sweeper = ReconciliationSweeper(mock_stripe, subscriptions, payments, resolver, recorder)
    billing = BillingService(
        mock_stripe, subscriptions, payments, companies, resolver, synchronizer, sweeper
    )
    handlers = BillingEventHandlers(mock_stripe, resolver, synchronizer, recorder, sweeper, billing)

    return SimpleNamespace(
        stripe=mock_stripe,
        subscriptions=subscriptions,
        payments=payments,
        companies=companies,
        events=WebhookEventRepository(),
        resolver=resolver,
        synchronizer=synchronizer,
        recorder=recorder,
        sweeper=sweeper,
        billing=billing,
        handlers=handlers,
    )


# =============================================================================
# Payload Builders
# =============================================================================

def _ts(moment: Optional[datetime]) -> Optional[int]:
    return int(moment.timestamp()) if moment else None


@pytest.fixture
def stripe_subscription_payload():
    """Builder for Stripe subscription JSON."""

    def _build(
        sub_id: str = "sub_123",
        customer: Optional[str] = "cus_123",
        status: str = "active",
        company_id: Optional[str] = None,
        trial_end: Optional[datetime] = None,
        current_period_end: Optional[datetime] = datetime(2026, 2, 15, tzinfo=timezone.utc),
        item_period_end: Optional[datetime] = None,
        quantity: int = 5,
        price_id: str = "price_enterprise",
        unit_amount: int = 600,
        interval: str = "month",
        plan_type: Optional[str] = "ENTERPRISE",
    ) -> dict:
        item = {
            "id": "si_1",
            "quantity": quantity,
            "price": {
                "id": price_id,
                "unit_amount": unit_amount,
                "recurring": {"interval": interval},
                "metadata": {"plan_type": plan_type} if plan_type else {},
            },
        }
        if item_period_end:
            item["current_period_end"] = _ts(item_period_end)

        payload = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "metadata": {"company_id": company_id} if company_id else {},
            "trial_end": _ts(trial_end),
            "items": {"object": "list", "data": [item]},
            "cancel_at_period_end": False,
        }
        if current_period_end:
            payload["current_period_end"] = _ts(current_period_end)
        return payload

    return _build


@pytest.fixture
def invoice_payload():
    """Builder for Stripe invoice JSON."""

    def _build(
        invoice_id: str = "in_001",
        subscription: Optional[str] = "sub_123",
        customer: Optional[str] = "cus_123",
        status: str = "paid",
        amount_paid: Optional[int] = 3000,
        total: Optional[int] = 3000,
        amount_due: Optional[int] = 3000,
        **extra,
    ) -> dict:
        payload = {
            "id": invoice_id,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": status,
            "payment_intent": f"pi_{invoice_id}",
            "charge": f"ch_{invoice_id}",
            "period_start": _ts(datetime(2026, 1, 15, tzinfo=timezone.utc)),
            "period_end": _ts(datetime(2026, 2, 15, tzinfo=timezone.utc)),
            "description": "Enterprise plan",
            "number": f"NUM-{invoice_id}",
        }
        # Absent fields are omitted, not null
        for key, value in (("amount_paid", amount_paid), ("total", total), ("amount_due", amount_due)):
            if value is not None:
                payload[key] = value
        payload.update(extra)
        return payload

    return _build


@pytest.fixture
def event_payload():
    """Builder for a Stripe event envelope."""

    def _build(event_type: str, obj: dict, event_id: Optional[str] = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _build


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_request():
    """Encode an event and sign it with the test webhook secret."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        body = json.dumps(event).encode()
        return body, sign_payload(body, secret)

    return _sign
