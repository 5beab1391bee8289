"""
Pytest configuration for integration tests.

Runs the conversation service in-process against an in-memory database,
the stub channel and the stub payment gateway.
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.settings import Settings
from conversation_engine.bootstrap import build_engine
from conversation_engine.payments.stub_gateway import StubPaymentGateway
from conversation_engine.persistence import init_db
from conversation_engine.persistence.models import AISettings, Business
from conversation_engine.providers.stub import StubChannelClient
from conversation_service.main import app

CHANNEL_API_KEY = "channel-webhook-key"
WEBHOOK_SECRET = "whsec_integration"


@pytest.fixture
def settings():
    return Settings(
        CHANNEL_PROVIDER="stub",
        PAYMENT_PROVIDER="stub",
        EVOLUTION_API_KEY=CHANNEL_API_KEY,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        OPENROUTER_API_KEY="",
        FRONTEND_URL="https://app.example.com",
    )


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def business_id(session_factory):
    business_id = UUID("87654321-4321-4321-4321-210987654321")
    with session_factory() as db:
        db.add(Business(id=business_id, name="Palm Florist", owner_email="owner@palm.example"))
        db.add(AISettings(business_id=business_id, enabled=True, language="en"))
        db.commit()
    return business_id


@pytest.fixture
def engine(settings, session_factory):
    """Engine on stubs; no inference key, so every answer is the apology."""
    return build_engine(
        settings,
        session_factory,
        channel=StubChannelClient(),
        payment_gateway=StubPaymentGateway(webhook_secret=WEBHOOK_SECRET),
    )


@pytest.fixture
def client(engine):
    app.state.engine = engine
    with TestClient(app) as test_client:
        yield test_client
    app.state.engine = None
