"""
Conversation Engine Database Models

Tables owned by the conversation engine.

Tables:
- businesses: Tenants (read-only to the engine apart from seeding)
- channel_connections: Durable mirror of each business's channel session
- customers: Customers resolved from inbound channel addresses
- messages: Append-only conversation log (incoming and outgoing)
- knowledge_entries: Q/A pairs grounding the assistant
- ai_settings: Per-business assistant configuration
- products: Catalog used to price order line items
- orders: Orders created from customer conversations
- payment_settings: Per-business merchant account
- payment_transactions: Checkout sessions opened for orders
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

ConversationBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ConnectionStatus(str, Enum):
    """State of a business's channel session."""

    PAIRING = "pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


class MessageDirection(str, Enum):
    """Direction of a message."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    """Status of a message."""

    RECEIVED = "received"
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OrderStatus(str, Enum):
    """Status of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """Status of a payment transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TimestampMixin:
    """created_at / updated_at columns."""

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class BusinessScopedMixin(TimestampMixin):
    """Common fields for tables scoped to a business."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(Uuid(as_uuid=True), nullable=False, index=True)


class Business(ConversationBase, TimestampMixin):
    """A tenant running automated conversations."""

    __tablename__ = "businesses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    owner_email = Column(String(255), nullable=True)


class ChannelConnection(ConversationBase, BusinessScopedMixin):
    """
    Durable mirror of a business's channel session.

    The in-memory session registry is authoritative while the process runs;
    this row is what dashboards and restarts read.
    """

    __tablename__ = "channel_connections"

    instance_name = Column(String(100), nullable=True)  # Provider-side session name
    phone_number = Column(String(32), nullable=True)  # Business's own address once connected
    status = Column(String(20), nullable=False, default=ConnectionStatus.DISCONNECTED.value)
    status_reason = Column(String(255), nullable=True)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("business_id", name="uq_channel_connections_business"),
        Index("idx_channel_connections_status", "status"),
    )


class Customer(ConversationBase, BusinessScopedMixin):
    """
    A customer of a business, identified by channel address.

    Created lazily on first contact.
    """

    __tablename__ = "customers"

    phone = Column(String(32), nullable=False)
    name = Column(String(255), nullable=True)
    source = Column(String(20), nullable=False, default="whatsapp")

    __table_args__ = (
        UniqueConstraint("business_id", "phone", name="uq_customers_business_phone"),
    )


class Message(ConversationBase, TimestampMixin):
    """
    One message of a conversation.

    Append-only. Ordered by (created_at, id); the integer id breaks ties
    between messages stored within the same clock tick.
    """

    __tablename__ = "messages"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    business_id = Column(Uuid(as_uuid=True), nullable=False)
    customer_id = Column(Uuid(as_uuid=True), nullable=True)
    direction = Column(String(10), nullable=False)
    content = Column(Text, nullable=False, default="")
    channel = Column(String(20), nullable=False, default="whatsapp")
    is_ai = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    provider_message_id = Column(String(128), nullable=True)  # For dedup of inbound events
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_message_id", name="uq_messages_provider_id"),
        Index("idx_messages_customer_created", "business_id", "customer_id", "created_at"),
    )


class KnowledgeEntry(ConversationBase, BusinessScopedMixin):
    """A question/answer pair the assistant may use."""

    __tablename__ = "knowledge_entries"

    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)


class AISettings(ConversationBase, BusinessScopedMixin):
    """
    Assistant configuration for a business.

    A business without a row has the assistant disabled.
    """

    __tablename__ = "ai_settings"

    enabled = Column(Boolean, nullable=False, default=False)
    personality = Column(String(100), nullable=True)  # e.g. friendly, formal
    temperature = Column(Float, nullable=True)
    language = Column(String(5), nullable=True)  # ar, en, or NULL for both
    model = Column(String(100), nullable=True)  # Overrides AI_DEFAULT_MODEL

    __table_args__ = (
        UniqueConstraint("business_id", name="uq_ai_settings_business"),
    )


class Product(ConversationBase, BusinessScopedMixin):
    """Catalog entry used to price order line items."""

    __tablename__ = "products"

    name = Column(String(255), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_products_business_name", "business_id", "name"),
    )


class Order(ConversationBase, BusinessScopedMixin):
    """
    An order captured from a conversation.

    items: [{"product": str, "quantity": int, "unit_price": str}]
    """

    __tablename__ = "orders"

    customer_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    items = Column(JSONType, nullable=False, default=list)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    delivery_address = Column(Text, nullable=True)
    contact_phone = Column(String(32), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_orders_business_status", "business_id", "status"),
    )


class PaymentSettings(ConversationBase, BusinessScopedMixin):
    """Merchant account of a business. Disabled until the owner turns it on."""

    __tablename__ = "payment_settings"

    external_account_id = Column(String(100), nullable=True)
    enabled = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("business_id", name="uq_payment_settings_business"),
    )


class PaymentTransaction(ConversationBase, BusinessScopedMixin):
    """
    A checkout session opened for an order.

    Leaves `pending` exactly once, to `completed` or `failed`.
    """

    __tablename__ = "payment_transactions"

    order_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    external_session_id = Column(String(255), nullable=False)
    external_payment_id = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    checkout_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_session_id", name="uq_payment_transactions_session"),
        # At most one open checkout per order
        Index(
            "uq_payment_transactions_pending_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )
