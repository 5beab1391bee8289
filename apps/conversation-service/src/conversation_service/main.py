"""
Conversation Service

FastAPI app hosting the conversation engine.

Responsibilities:
- Receive channel webhooks and queue their events for the dispatcher
- Receive payment gateway webhooks and reconcile orders
- Channel session administration (connect, status, disconnect, manual send)
- Payment administration (merchant onboarding, payment links)
- Conversation history for dashboards

Channel sessions live in this process: run a single instance per channel
account.
"""

import json
import logging
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from basecore.db import get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import get_settings
from conversation_engine.bootstrap import ConversationEngine, build_engine
from conversation_engine.contracts.payloads import (
    BusinessRequest,
    ChannelStatusResponse,
    OrderRequest,
    SendMessageRequest,
    SendPaymentLinkRequest,
)
from conversation_engine.errors import (
    BusinessNotFound,
    ChannelNotConnected,
    ConversationEngineError,
    InvalidSignature,
    OrderNotFound,
    OrderNotPayable,
    PaymentGatewayError,
    PaymentNotConfigured,
)
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.providers.evolution.webhook import validate_api_key

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Conversation Service",
    description="WhatsApp conversations with an AI assistant, orders and payments",
    version="1.0.0",
)

ERROR_STATUS = {
    OrderNotFound: 404,
    BusinessNotFound: 404,
    PaymentNotConfigured: 400,
    OrderNotPayable: 409,
    ChannelNotConnected: 409,
    PaymentGatewayError: 502,
}


def get_conversation_engine(request: Request) -> ConversationEngine:
    """Engine of this process (built on startup)."""
    return request.app.state.engine


@app.on_event("startup")
async def startup():
    """Build the engine, start the dispatcher and reattach channel sessions."""
    if getattr(app.state, "engine", None) is None:
        settings = get_settings()
        app.state.engine = build_engine(settings, get_sessionmaker(), redis_client=get_redis_client())

    restored = await app.state.engine.start()
    logger.info(f"Conversation service started ({restored} channel sessions restored)")


@app.on_event("shutdown")
async def shutdown():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.aclose()
    logger.info("Conversation service stopped")


@app.exception_handler(ConversationEngineError)
async def engine_error_handler(request: Request, exc: ConversationEngineError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error(f"Request failed: {exc}", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"detail": exc.message, "code": exc.code, "details": exc.details}),
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "conversation-service"}


# =============================================================================
# Webhooks
# =============================================================================


@app.post("/webhooks/channel")
async def receive_channel_webhook(
    request: Request,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """
    Receive a channel provider webhook.

    Events are queued for the dispatcher; the provider gets 200 right away.
    """
    api_key = engine.settings.EVOLUTION_API_KEY
    if api_key and not validate_api_key(dict(request.headers), api_key):
        logger.warning("Invalid channel webhook API key")
        raise HTTPException(status_code=403, detail="Invalid API key")

    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    events = engine.channel.parse_event(payload)
    queued = sum(1 for event in events if engine.dispatcher.put_nowait(event))

    if queued < len(events):
        raise HTTPException(status_code=503, detail="Event queue full")

    return {"status": "accepted", "events": queued}


@app.post("/webhooks/payments")
async def receive_payment_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """
    Receive a payment gateway webhook.

    200 for accepted events (duplicates included), 400 when the signature
    does not verify.
    """
    body = await request.body()

    try:
        result = await engine.payments.handle_gateway_webhook(body, stripe_signature)
    except InvalidSignature as e:
        logger.warning(f"Rejected payment webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    return {"received": True, **result}


# =============================================================================
# Channel
# =============================================================================


@app.post("/api/channel/connect", response_model=ChannelStatusResponse)
async def connect_channel(
    body: BusinessRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Open (or return) the business's channel session; poll status for the QR."""
    session = await engine.registry.connect(body.business_id)
    return session.to_dict()


@app.get("/api/channel/status/{business_id}", response_model=ChannelStatusResponse)
async def channel_status(
    business_id: UUID,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    return engine.registry.status(business_id)


@app.post("/api/channel/disconnect")
async def disconnect_channel(
    body: BusinessRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    disconnected = await engine.registry.disconnect(body.business_id)
    return {"success": True, "was_connected": disconnected}


@app.post("/api/channel/send")
async def send_message(
    body: SendMessageRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Send a manual message from the operator."""
    if engine.registry.get_active_session(body.business_id) is None:
        raise ChannelNotConnected(body.business_id)

    result = await engine.outbound.send_text(body.business_id, body.to, body.message)
    if result["status"] != "sent":
        raise HTTPException(status_code=502, detail=result.get("error") or "Send failed")
    return result


# =============================================================================
# Payments
# =============================================================================


@app.post("/api/payments/connect")
async def connect_payments(
    body: BusinessRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Provision the merchant account and return its onboarding link."""
    url = await engine.payments.create_merchant_account(body.business_id)
    return {"url": url}


@app.post("/api/payments/create-link")
async def create_payment_link(
    body: OrderRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    url = await engine.payments.create_payment_session(body.order_id)
    return {"url": url}


@app.post("/api/payments/send-link")
async def send_payment_link(
    body: SendPaymentLinkRequest,
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    result = await engine.payments.deliver_payment_link(body.order_id, body.phone, body.business_id)
    return {"success": result["send"].get("status") == "sent", **result}


# =============================================================================
# Messages
# =============================================================================


@app.get("/api/messages/conversation/{customer_id}")
async def get_conversation(
    customer_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Messages of one customer, oldest first."""
    with engine.session_factory() as db:
        messages = ConversationRepository(db).list_conversation(customer_id, limit=limit, offset=offset)

    return {
        "customer_id": str(customer_id),
        "messages": [
            {
                "id": message.id,
                "direction": message.direction,
                "content": message.content,
                "is_ai": message.is_ai,
                "status": message.status,
                "created_at": message.created_at.isoformat() if message.created_at else None,
            }
            for message in messages
        ],
    }


@app.get("/api/messages/conversations/{business_id}")
async def list_conversations(
    business_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Conversations of a business with their latest message, most recent first."""
    with engine.session_factory() as db:
        conversations = ConversationRepository(db).list_conversations(business_id, limit=limit)

    return {
        "business_id": str(business_id),
        "conversations": [
            {
                "customer_id": str(customer.id),
                "phone": customer.phone,
                "name": customer.name,
                "last_message": message.content,
                "last_direction": message.direction,
                "last_message_at": message.created_at.isoformat() if message.created_at else None,
            }
            for customer, message in conversations
        ],
    }
