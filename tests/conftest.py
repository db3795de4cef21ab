"""
Test configuration and fixtures for Billing Sync.

Provides shared fixtures for unit and integration tests: an in-memory SQLite
datastore, a Stripe service with mocked API calls (signature verification is
real), and helpers for building signed webhook deliveries.
"""

import os

# Must be set before billing_sync.config.settings is first imported.
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")

import hashlib
import hmac
import json
import time
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from billing_sync.config.plans import PlanCatalog
from billing_sync.domain.retry import RetryPolicy
from billing_sync.infrastructure.db.database import DatastoreClient
from billing_sync.infrastructure.db.models import SubscriptionModel, WebhookEventModel  # noqa: F401
from billing_sync.infrastructure.db.repositories import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from billing_sync.infrastructure.payments.stripe_service import Found, StripeService
from billing_sync.infrastructure.services.cancellation_service import CancellationEnforcer
from billing_sync.infrastructure.services.event_handlers import SubscriptionEventHandlers
from billing_sync.infrastructure.services.reconciliation_service import ReconciliationService


WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
TEST_USER_ID = "00000000-0000-0000-0000-000000000001"
OTHER_USER_ID = "00000000-0000-0000-0000-000000000002"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# Datastore Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with both tables for each test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def datastore(engine) -> DatastoreClient:
    """Privileged datastore client."""
    return DatastoreClient(engine, privileged=True)


@pytest.fixture
def scoped_datastore(engine) -> DatastoreClient:
    """Scoped datastore client over the same database."""
    return DatastoreClient(engine, privileged=False)


@pytest.fixture
def subscription_repo(datastore) -> SubscriptionRepository:
    return SubscriptionRepository(datastore)


@pytest.fixture
def audit_repo(datastore) -> WebhookEventRepository:
    return WebhookEventRepository(datastore)


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def mock_provider() -> StripeService:
    """
    StripeService with mocked API calls.

    verify_webhook_signature is the real implementation, checked against
    WEBHOOK_SECRET.
    """
    provider = StripeService(
        api_key="sk_test_dummy",
        webhook_secret=WEBHOOK_SECRET,
        timeout_seconds=1.0,
        tolerance_seconds=300,
    )
    provider.retrieve_subscription = AsyncMock()
    provider.retrieve_checkout_session = AsyncMock()
    provider.update_subscription = AsyncMock()
    provider.cancel_subscription = AsyncMock()
    return provider


@pytest.fixture
def plan_catalog() -> PlanCatalog:
    return PlanCatalog()


@pytest.fixture
def enforcer(subscription_repo) -> CancellationEnforcer:
    return CancellationEnforcer(subscription_repo)


@pytest.fixture
def handlers(subscription_repo, mock_provider, enforcer, plan_catalog) -> SubscriptionEventHandlers:
    return SubscriptionEventHandlers(subscription_repo, mock_provider, enforcer, plan_catalog)


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0.0)


@pytest.fixture
def reconciliation_service(
    subscription_repo, mock_provider, enforcer, handlers, no_wait_policy
) -> ReconciliationService:
    return ReconciliationService(
        subscription_repo,
        mock_provider,
        enforcer,
        handlers,
        drift_tolerance_seconds=5,
        poll_policy=no_wait_policy,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def make_subscription():
    """Factory for Stripe subscription objects (as plain dicts)."""
    def _make(
        subscription_id: str = "sub_123",
        status: str = "active",
        start: Any = 1700000000,
        end: Any = 1702592000,
        customer: str = "cus_123",
        interval: str = "month",
        price_id: str = "price_1R9TlvDhXX7mjDi1B0P8TotW",
        cancel_at_period_end: bool = False,
        metadata: Optional[dict] = None,
    ) -> dict:
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_start": start,
            "current_period_end": end,
            "cancel_at_period_end": cancel_at_period_end,
            "items": {
                "object": "list",
                "data": [
                    {
                        "id": "si_123",
                        "price": {"id": price_id, "recurring": {"interval": interval, "interval_count": 1}},
                    }
                ],
            },
            "metadata": metadata or {},
        }
    return _make


@pytest.fixture
def make_event():
    """Factory for Stripe event envelopes."""
    def _make(event_type: str, obj: dict, event_id: str = "evt_123") -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": 1700000000,
            "data": {"object": obj},
        }
    return _make


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def sign_payload():
    """Build a real stripe-signature header (HMAC-SHA256) for a body."""
    return _sign


@pytest.fixture
def signed_delivery():
    """Serialize an event and sign it. Returns (body, headers)."""
    def _deliver(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[str, dict]:
        body = json.dumps(event)
        headers = {
            "stripe-signature": _sign(body, secret),
            "content-type": "application/json",
        }
        return body, headers
    return _deliver


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(datastore, scoped_datastore, mock_provider):
    """FastAPI application wired to the test datastore and mocked provider."""
    from billing_sync.api.dependencies import CallerIdentity, get_current_identity
    from billing_sync.infrastructure.db.database import get_privileged_client, get_scoped_client
    from billing_sync.infrastructure.payments.stripe_service import get_stripe_service
    from billing_sync.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_privileged_client] = lambda: datastore
    fastapi_app.dependency_overrides[get_scoped_client] = lambda: scoped_datastore
    fastapi_app.dependency_overrides[get_stripe_service] = lambda: mock_provider
    fastapi_app.dependency_overrides[get_current_identity] = lambda: CallerIdentity(user_id=TEST_USER_ID)

    yield fastapi_app

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def as_caller(app):
    """Switch the authenticated caller for the current test."""
    from billing_sync.api.dependencies import CallerIdentity, get_current_identity

    def _as(user_id: str = TEST_USER_ID, role: Optional[str] = None) -> CallerIdentity:
        identity = CallerIdentity(user_id=user_id, role=role)
        app.dependency_overrides[get_current_identity] = lambda: identity
        return identity
    return _as


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async test client running in the test's event loop."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def found():
    """Wrap a payload the way StripeService returns a hit."""
    return lambda value: Found(value)
