"""
Conversation Engine Persistence

SQLAlchemy models and repository for conversation engine tables.
"""

from sqlalchemy.engine import Engine

from conversation_engine.persistence.models import (
    AISettings,
    Business,
    ChannelConnection,
    ConnectionStatus,
    ConversationBase,
    Customer,
    KnowledgeEntry,
    Message,
    MessageDirection,
    MessageStatus,
    Order,
    OrderStatus,
    PaymentSettings,
    PaymentTransaction,
    Product,
    TransactionStatus,
)
from conversation_engine.persistence.repo import ConversationRepository


def init_db(engine: Engine) -> None:
    """Create all conversation engine tables that do not exist yet."""
    ConversationBase.metadata.create_all(bind=engine)


__all__ = [
    "init_db",
    "ConversationBase",
    "ConversationRepository",
    "Business",
    "ChannelConnection",
    "Customer",
    "Message",
    "KnowledgeEntry",
    "AISettings",
    "Product",
    "Order",
    "PaymentSettings",
    "PaymentTransaction",
    "ConnectionStatus",
    "MessageDirection",
    "MessageStatus",
    "OrderStatus",
    "TransactionStatus",
]
