"""
Conversation Repository

Repository pattern for conversation engine database operations.
Callers own the session and decide when to commit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from conversation_engine.persistence.models import (
    AISettings,
    Business,
    ChannelConnection,
    ConnectionStatus,
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
    utcnow,
)


class ConversationRepository:
    """Repository for conversation engine database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Businesses
    # =========================================================================

    def get_business(self, business_id: UUID) -> Business | None:
        """Get business by ID."""
        return self.db.get(Business, business_id)

    # =========================================================================
    # Channel Connections
    # =========================================================================

    def get_connection(self, business_id: UUID) -> ChannelConnection | None:
        """Get the channel connection row for a business."""
        return (
            self.db.query(ChannelConnection)
            .filter(ChannelConnection.business_id == business_id)
            .first()
        )

    def upsert_connection(
        self,
        business_id: UUID,
        status: ConnectionStatus,
        instance_name: str | None = None,
        phone_number: str | None = None,
        last_connected_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> ChannelConnection:
        """
        Create or update the connection row for a business.

        Fields passed as None keep their stored value.
        """
        connection = self.get_connection(business_id)
        if connection is None:
            connection = ChannelConnection(business_id=business_id)
            self.db.add(connection)

        connection.status = status.value
        connection.status_reason = status_reason
        if instance_name is not None:
            connection.instance_name = instance_name
        if phone_number is not None:
            connection.phone_number = phone_number
        if last_connected_at is not None:
            connection.last_connected_at = last_connected_at
        return connection

    def list_connections(self, status: ConnectionStatus | None = None) -> list[ChannelConnection]:
        """List connection rows, optionally filtered by status."""
        query = self.db.query(ChannelConnection)
        if status:
            query = query.filter(ChannelConnection.status == status.value)
        return query.all()

    # =========================================================================
    # Customers
    # =========================================================================

    def get_customer(self, customer_id: UUID) -> Customer | None:
        """Get customer by ID."""
        return self.db.get(Customer, customer_id)

    def get_customer_by_phone(self, business_id: UUID, phone: str) -> Customer | None:
        """Get customer by business and channel address."""
        return (
            self.db.query(Customer)
            .filter(Customer.business_id == business_id, Customer.phone == phone)
            .first()
        )

    def get_or_create_customer(
        self,
        business_id: UUID,
        phone: str,
        name: str | None = None,
        source: str = "whatsapp",
    ) -> tuple[Customer, bool]:
        """
        Get existing customer or create a new one.

        Returns:
            Tuple of (customer, created) where created is True if new.
        """
        customer = self.get_customer_by_phone(business_id, phone)
        if customer:
            return customer, False

        customer = Customer(
            business_id=business_id,
            phone=phone,
            name=name or phone,
            source=source,
        )
        self.db.add(customer)
        self.db.flush()
        return customer, True

    # =========================================================================
    # Messages
    # =========================================================================

    def is_message_processed(self, provider_message_id: str) -> bool:
        """Check if an inbound event was already stored (idempotency)."""
        return (
            self.db.execute(
                select(Message.id).where(Message.provider_message_id == provider_message_id).limit(1)
            ).first()
            is not None
        )

    def create_message(
        self,
        business_id: UUID,
        customer_id: UUID | None,
        direction: MessageDirection,
        content: str,
        status: MessageStatus,
        is_ai: bool = False,
        channel: str = "whatsapp",
        provider_message_id: str | None = None,
    ) -> Message:
        """Create a new message record (flushed, so its id is assigned)."""
        message = Message(
            business_id=business_id,
            customer_id=customer_id,
            direction=direction.value,
            content=content,
            status=status.value,
            is_ai=is_ai,
            channel=channel,
            provider_message_id=provider_message_id,
        )
        self.db.add(message)
        self.db.flush()
        return message

    def update_message_status(
        self,
        message_id: int,
        status: MessageStatus,
        provider_message_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Update message status after a send attempt."""
        values: dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if provider_message_id:
            values["provider_message_id"] = provider_message_id
        if error_message:
            values["error_message"] = error_message
        self.db.execute(update(Message).where(Message.id == message_id).values(**values))

    def get_recent_messages(
        self,
        business_id: UUID,
        customer_id: UUID,
        limit: int = 10,
        exclude_message_id: int | None = None,
    ) -> list[Message]:
        """
        Get the latest messages of a conversation, newest first.

        Args:
            business_id: Business UUID
            customer_id: Customer UUID
            limit: Maximum messages to return
            exclude_message_id: Message to leave out (the one being answered)
        """
        query = self.db.query(Message).filter(
            Message.business_id == business_id,
            Message.customer_id == customer_id,
        )
        if exclude_message_id is not None:
            query = query.filter(Message.id != exclude_message_id)

        return query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()

    def list_conversation(
        self,
        customer_id: UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """List a customer's messages in chronological order."""
        return (
            self.db.query(Message)
            .filter(Message.customer_id == customer_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def list_conversations(self, business_id: UUID, limit: int = 50) -> list[tuple[Customer, Message]]:
        """
        List a business's conversations with their latest message.

        Returns:
            (customer, latest message) pairs, most recent conversation first
        """
        latest = (
            select(func.max(Message.id).label("message_id"))
            .where(Message.business_id == business_id, Message.customer_id.is_not(None))
            .group_by(Message.customer_id)
            .subquery()
        )

        rows = (
            self.db.query(Customer, Message)
            .join(Message, Message.customer_id == Customer.id)
            .join(latest, latest.c.message_id == Message.id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
        return [(customer, message) for customer, message in rows]

    # =========================================================================
    # Knowledge & AI Settings
    # =========================================================================

    def list_knowledge(self, business_id: UUID) -> list[KnowledgeEntry]:
        """List knowledge entries of a business, oldest first."""
        return (
            self.db.query(KnowledgeEntry)
            .filter(KnowledgeEntry.business_id == business_id)
            .order_by(KnowledgeEntry.created_at.asc())
            .all()
        )

    def get_ai_settings(self, business_id: UUID) -> AISettings | None:
        """Get assistant settings of a business."""
        return (
            self.db.query(AISettings)
            .filter(AISettings.business_id == business_id)
            .first()
        )

    # =========================================================================
    # Catalog & Orders
    # =========================================================================

    def find_product(self, business_id: UUID, name: str) -> Product | None:
        """Find an active product by name (case-insensitive)."""
        return (
            self.db.query(Product)
            .filter(
                Product.business_id == business_id,
                func.lower(Product.name) == name.strip().lower(),
                Product.is_active == True,  # noqa: E712
            )
            .first()
        )

    def create_order(
        self,
        business_id: UUID,
        customer_id: UUID | None,
        items: list[dict[str, Any]],
        total_amount: Decimal,
        currency: str,
        delivery_address: str | None = None,
        contact_phone: str | None = None,
    ) -> Order:
        """Create a pending order."""
        order = Order(
            business_id=business_id,
            customer_id=customer_id,
            status=OrderStatus.PENDING.value,
            items=items,
            total_amount=total_amount,
            currency=currency,
            delivery_address=delivery_address,
            contact_phone=contact_phone,
        )
        self.db.add(order)
        self.db.flush()
        return order

    def get_order(self, order_id: UUID) -> Order | None:
        """Get order by ID."""
        return self.db.get(Order, order_id)

    def list_orders(
        self,
        business_id: UUID,
        status: OrderStatus | None = None,
        limit: int = 50,
    ) -> list[Order]:
        """List orders of a business, newest first."""
        query = self.db.query(Order).filter(Order.business_id == business_id)
        if status:
            query = query.filter(Order.status == status.value)
        return query.order_by(Order.created_at.desc()).limit(limit).all()

    def confirm_order(self, order_id: UUID, paid_at: datetime) -> bool:
        """Mark a pending order as confirmed and paid."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CONFIRMED.value, paid_at=paid_at, updated_at=utcnow())
        )
        return result.rowcount == 1

    # =========================================================================
    # Payments
    # =========================================================================

    def get_payment_settings(self, business_id: UUID) -> PaymentSettings | None:
        """Get merchant account settings of a business."""
        return (
            self.db.query(PaymentSettings)
            .filter(PaymentSettings.business_id == business_id)
            .first()
        )

    def upsert_payment_settings(
        self,
        business_id: UUID,
        external_account_id: str | None = None,
        enabled: bool | None = None,
    ) -> PaymentSettings:
        """Create or update merchant account settings (None keeps the stored value)."""
        settings = self.get_payment_settings(business_id)
        if settings is None:
            settings = PaymentSettings(business_id=business_id, enabled=False)
            self.db.add(settings)

        if external_account_id is not None:
            settings.external_account_id = external_account_id
        if enabled is not None:
            settings.enabled = enabled
        return settings

    def create_transaction(
        self,
        business_id: UUID,
        order_id: UUID,
        external_session_id: str,
        amount: Decimal,
        currency: str,
        checkout_url: str | None = None,
    ) -> PaymentTransaction:
        """Record a pending transaction for a checkout session."""
        transaction = PaymentTransaction(
            business_id=business_id,
            order_id=order_id,
            external_session_id=external_session_id,
            checkout_url=checkout_url,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING.value,
        )
        self.db.add(transaction)
        return transaction

    def get_pending_transaction(self, order_id: UUID) -> PaymentTransaction | None:
        """Get the open checkout of an order, if any."""
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .first()
        )

    def get_transaction_by_session(self, external_session_id: str) -> PaymentTransaction | None:
        """Get transaction by checkout session ID."""
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.external_session_id == external_session_id)
            .first()
        )

    def complete_transaction_if_pending(
        self,
        external_session_id: str,
        external_payment_id: str | None,
        completed_at: datetime,
    ) -> bool:
        """
        Move a transaction from pending to completed.

        Single conditional UPDATE; of several concurrent deliveries of the
        same event exactly one sees True.
        """
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.external_session_id == external_session_id,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .values(
                status=TransactionStatus.COMPLETED.value,
                external_payment_id=external_payment_id,
                completed_at=completed_at,
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1

    def fail_transaction_if_pending(self, external_session_id: str, failed_at: datetime) -> bool:
        """Move a transaction from pending to failed (single conditional UPDATE)."""
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.external_session_id == external_session_id,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .values(
                status=TransactionStatus.FAILED.value,
                failed_at=failed_at,
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1
