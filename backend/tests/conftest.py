"""Pytest configuration and fixtures for EstateCRM API tests."""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any
from uuid import uuid4

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_estatecrm")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_estatecrm")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "verify-me")
os.environ.setdefault("SUPABASE_URL", "")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from estatecrm.api.dependencies import CurrentUser, get_current_user
from estatecrm.config import settings
from estatecrm.database import Base, get_db
from estatecrm.main import app
from estatecrm.models import Organization, OrganizationMember
from estatecrm.models.organization import MemberRole, SubscriptionStatus


# Test database URL (in-memory SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def async_client(async_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for testing API endpoints."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield async_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def current_user() -> CurrentUser:
    """The authenticated Supabase user."""
    return CurrentUser(id=uuid4(), email="agent@example.com")


@pytest_asyncio.fixture(scope="function")
async def authed_client(
    async_client: AsyncClient,
    current_user: CurrentUser,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client whose requests are authenticated as ``current_user``."""
    app.dependency_overrides[get_current_user] = lambda: current_user
    yield async_client
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """Create synchronous test client."""
    with TestClient(app) as test_client:
        yield test_client


async def _create_organization(
    session: AsyncSession,
    user: CurrentUser,
    **fields: Any,
) -> Organization:
    organization = Organization(name="Acme Realty", created_by=user.id, **fields)
    session.add(organization)
    await session.flush()
    session.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=user.id,
            role=MemberRole.ORGANIZER.value,
        )
    )
    await session.commit()
    await session.refresh(organization)
    return organization


@pytest_asyncio.fixture
async def pending_organization(
    async_session: AsyncSession,
    current_user: CurrentUser,
) -> Organization:
    """Organization created during onboarding, before checkout."""
    return await _create_organization(async_session, current_user)


@pytest_asyncio.fixture
async def active_organization(
    async_session: AsyncSession,
    current_user: CurrentUser,
) -> Organization:
    """Organization with a live Stripe subscription."""
    return await _create_organization(
        async_session,
        current_user,
        subscription_status=SubscriptionStatus.ACTIVE.value,
        stripe_subscription_id="sub_active_123",
    )


@pytest.fixture
def sign_stripe_payload() -> Callable[[dict[str, Any]], tuple[bytes, dict[str, str]]]:
    """Serialize an event and compute a valid Stripe-Signature header for it."""

    def _sign(event: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
        payload = json.dumps(event)
        timestamp = int(time.time())
        signature = hmac.new(
            settings.STRIPE_WEBHOOK_SECRET.encode(),
            f"{timestamp}.{payload}".encode(),
            hashlib.sha256,
        ).hexdigest()
        headers = {
            "Content-Type": "application/json",
            "Stripe-Signature": f"t={timestamp},v1={signature}",
        }
        return payload.encode(), headers

    return _sign


@pytest.fixture
def mock_stripe_checkout_event() -> Callable[..., dict[str, Any]]:
    """Build a checkout.session.completed event."""

    def _build(
        organization_id: Any,
        billing_cycle: str | None = "monthly",
        subscription: str | None = "sub_new_456",
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"planName": "Professional"}
        if organization_id is not None:
            metadata["organizationId"] = str(organization_id)
        if billing_cycle is not None:
            metadata["billingCycle"] = billing_cycle

        return {
            "id": "evt_checkout_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_123",
                    "object": "checkout.session",
                    "mode": "subscription",
                    "payment_status": "paid",
                    "customer": "cus_test_123",
                    "subscription": subscription,
                    "metadata": metadata,
                }
            },
        }

    return _build


@pytest.fixture
def mock_stripe_subscription_event() -> Callable[..., dict[str, Any]]:
    """Build a customer.subscription.* event."""

    def _build(
        event_type: str,
        subscription_id: str,
        status: str = "active",
    ) -> dict[str, Any]:
        return {
            "id": f"evt_{uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": subscription_id,
                    "object": "subscription",
                    "status": status,
                }
            },
        }

    return _build


@pytest.fixture
def mock_listing_data() -> dict[str, Any]:
    """Sample listing data for testing."""
    return {
        "title": "Sea view apartment",
        "address": "12 Marina Walk",
        "area_sqft": 1200,
        "price": 75000000,
        "bedrooms": 2,
        "bathrooms": 2.5,
        "property_type": "apartment",
    }
