"""
Engine Assembly

Builds the conversation engine from settings: channel client, payment
gateway, session registry, inbound pipeline and dispatcher. Used by the
HTTP service and the CLI.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

import redis
from sqlalchemy.orm import Session

from basecore.settings import Settings
from conversation_engine.ai.context import ContextBuilder
from conversation_engine.ai.gateway import InferenceGateway
from conversation_engine.payments.base import PaymentGateway
from conversation_engine.payments.lifecycle import PaymentLifecycleManager
from conversation_engine.payments.stripe_gateway import StripePaymentGateway
from conversation_engine.payments.stub_gateway import StubPaymentGateway
from conversation_engine.providers.base import ChannelClient
from conversation_engine.providers.evolution.client import EvolutionChannelClient
from conversation_engine.providers.stub.client import StubChannelClient
from conversation_engine.service.dispatcher import ChannelEventDispatcher
from conversation_engine.service.inbound_handler import InboundHandler
from conversation_engine.service.order_resolver import OrderResolver
from conversation_engine.sessions.outbound import OutboundHandler
from conversation_engine.sessions.registry import ChannelSessionRegistry
from conversation_engine.streams.producer import ChannelStatusProducer

logger = logging.getLogger(__name__)


@dataclass
class ConversationEngine:
    """Wired engine components sharing one registry and one set of clients."""

    settings: Settings
    session_factory: Callable[[], Session]
    channel: ChannelClient
    registry: ChannelSessionRegistry
    outbound: OutboundHandler
    inference: InferenceGateway
    payments: PaymentLifecycleManager
    resolver: OrderResolver
    inbound: InboundHandler
    dispatcher: ChannelEventDispatcher

    async def start(self) -> int:
        """Start consuming channel events and reattach persisted sessions."""
        self.dispatcher.start()
        return await self.registry.restore()

    async def aclose(self) -> None:
        await self.dispatcher.stop()
        await self.inference.close()
        await self.channel.close()


def build_channel_client(settings: Settings) -> ChannelClient:
    """Get the configured channel client."""
    if settings.CHANNEL_PROVIDER == "evolution":
        return EvolutionChannelClient(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            instance_prefix=settings.EVOLUTION_INSTANCE_PREFIX,
            timeout=settings.EVOLUTION_TIMEOUT_SECONDS,
        )
    return StubChannelClient()


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """Get the configured payment gateway."""
    if settings.PAYMENT_PROVIDER == "stripe":
        return StripePaymentGateway(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
        )
    return StubPaymentGateway(webhook_secret=settings.STRIPE_WEBHOOK_SECRET or "whsec_stub")


def build_engine(
    settings: Settings,
    session_factory: Callable[[], Session],
    redis_client: redis.Redis | None = None,
    channel: ChannelClient | None = None,
    payment_gateway: PaymentGateway | None = None,
    inference: InferenceGateway | None = None,
) -> ConversationEngine:
    """
    Assemble the engine.

    Args:
        settings: Runtime settings
        session_factory: Callable returning a new database session
        redis_client: Redis client for status observers (None disables them)
        channel: Channel client override (defaults to CHANNEL_PROVIDER)
        payment_gateway: Payment gateway override (defaults to PAYMENT_PROVIDER)
        inference: Inference gateway override

    Returns:
        ConversationEngine
    """
    channel = channel or build_channel_client(settings)
    payment_gateway = payment_gateway or build_payment_gateway(settings)
    inference = inference or InferenceGateway(
        api_key=settings.OPENROUTER_API_KEY,
        base_url=settings.OPENROUTER_BASE_URL,
        default_model=settings.AI_DEFAULT_MODEL,
        timeout=settings.AI_TIMEOUT_SECONDS,
        max_tokens=settings.AI_MAX_TOKENS,
        default_temperature=settings.AI_DEFAULT_TEMPERATURE,
        app_url=settings.FRONTEND_URL,
        app_title=settings.APP_NAME,
    )

    status_producer = ChannelStatusProducer(redis_client) if redis_client is not None else None
    registry = ChannelSessionRegistry(channel, session_factory, status_producer)
    outbound = OutboundHandler(registry, session_factory)
    payments = PaymentLifecycleManager(
        session_factory,
        payment_gateway,
        outbound,
        frontend_url=settings.FRONTEND_URL,
        currency=settings.PAYMENT_CURRENCY,
    )
    resolver = OrderResolver(
        session_factory,
        outbound,
        payments,
        default_unit_price=settings.DEFAULT_UNIT_PRICE,
        currency=settings.PAYMENT_CURRENCY,
    )
    inbound = InboundHandler(
        session_factory,
        ContextBuilder(history_limit=settings.AI_HISTORY_LIMIT),
        inference,
        resolver,
    )
    dispatcher = ChannelEventDispatcher(registry, inbound, maxsize=settings.CHANNEL_QUEUE_SIZE)

    logger.info(
        f"Conversation engine built "
        f"(channel={settings.CHANNEL_PROVIDER}, payments={settings.PAYMENT_PROVIDER})"
    )

    return ConversationEngine(
        settings=settings,
        session_factory=session_factory,
        channel=channel,
        registry=registry,
        outbound=outbound,
        inference=inference,
        payments=payments,
        resolver=resolver,
        inbound=inbound,
        dispatcher=dispatcher,
    )
