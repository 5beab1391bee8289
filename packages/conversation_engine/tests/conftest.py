"""
Pytest fixtures for conversation engine tests.
"""

from decimal import Decimal
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conversation_engine.ai.context import ContextBuilder, Prompt
from conversation_engine.ai.schema import InferenceOutcome, Unavailable
from conversation_engine.contracts.events import Ready
from conversation_engine.payments.lifecycle import PaymentLifecycleManager
from conversation_engine.payments.stub_gateway import StubPaymentGateway
from conversation_engine.persistence import init_db
from conversation_engine.persistence.models import AISettings, Business, PaymentSettings, Product
from conversation_engine.providers.stub import StubChannelClient
from conversation_engine.service.inbound_handler import InboundHandler
from conversation_engine.service.order_resolver import OrderResolver
from conversation_engine.sessions.outbound import OutboundHandler
from conversation_engine.sessions.registry import ChannelSessionRegistry

FRONTEND_URL = "https://app.example.com"


class ScriptedInference:
    """Inference gateway double returning queued outcomes and recording prompts."""

    def __init__(self, *outcomes: InferenceOutcome):
        self.outcomes = list(outcomes)
        self.prompts: list[Prompt] = []

    def push(self, outcome: InferenceOutcome) -> None:
        self.outcomes.append(outcome)

    async def complete(self, prompt: Prompt) -> InferenceOutcome:
        self.prompts.append(prompt)
        if not self.outcomes:
            return Unavailable(reason="no_scripted_outcome")
        return self.outcomes.pop(0)

    async def close(self) -> None:
        return None


@pytest.fixture
def sample_business_id():
    """Sample business UUID."""
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def sample_phone():
    """Sample customer phone number."""
    return "971501234567"


@pytest.fixture
def db_engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def business(session_factory, sample_business_id):
    """A business with the assistant enabled (English)."""
    with session_factory() as db:
        db.add(Business(id=sample_business_id, name="Cedar Bakery", owner_email="owner@cedar.example"))
        db.add(AISettings(business_id=sample_business_id, enabled=True, personality="warm", language="en"))
        db.commit()
    return sample_business_id


@pytest.fixture
def catalog(session_factory, business):
    """Catalog with one priced product."""
    with session_factory() as db:
        db.add(Product(business_id=business, name="Cake", unit_price=Decimal("50.00")))
        db.commit()
    return business


@pytest.fixture
def payments_enabled(session_factory, business):
    """Business with an enabled merchant account."""
    with session_factory() as db:
        db.add(PaymentSettings(business_id=business, external_account_id="acct_stub_cedar", enabled=True))
        db.commit()
    return "acct_stub_cedar"


@pytest.fixture
def channel_client():
    return StubChannelClient()


@pytest.fixture
def registry(channel_client, session_factory):
    return ChannelSessionRegistry(channel_client, session_factory)


@pytest.fixture
def outbound(registry, session_factory):
    return OutboundHandler(registry, session_factory)


@pytest.fixture
def payment_gateway():
    return StubPaymentGateway(webhook_secret="whsec_test")


@pytest.fixture
def payments(session_factory, payment_gateway, outbound):
    return PaymentLifecycleManager(
        session_factory,
        payment_gateway,
        outbound,
        frontend_url=FRONTEND_URL,
        currency="usd",
    )


@pytest.fixture
def inference():
    return ScriptedInference()


@pytest.fixture
def resolver(session_factory, outbound, payments):
    return OrderResolver(
        session_factory,
        outbound,
        payments,
        default_unit_price=Decimal("100"),
        currency="usd",
    )


@pytest.fixture
def inbound(session_factory, inference, resolver):
    return InboundHandler(session_factory, ContextBuilder(history_limit=10), inference, resolver)


@pytest_asyncio.fixture
async def connected(registry, business):
    """Business with a connected channel session."""
    await registry.connect(business)
    await registry.handle_event(Ready(business_id=business, identity="971500000000"))
    return business
