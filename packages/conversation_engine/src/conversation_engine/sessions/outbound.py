"""
Outbound Message Handler

Sends a text to a customer and keeps the conversation log in step:
1. Persists the outgoing message as pending
2. Sends it through the business's channel session
3. Marks it sent (with provider message id) or failed
"""

import logging
from collections.abc import Callable
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from conversation_engine.errors import ChannelNotConnected
from conversation_engine.persistence.models import MessageDirection, MessageStatus
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.sessions.registry import ChannelSessionRegistry

logger = logging.getLogger(__name__)


class OutboundHandler:
    """
    Sends outgoing messages.

    Channel failures are recorded on the message and reported in the
    result; they are not raised.
    """

    def __init__(
        self,
        registry: ChannelSessionRegistry,
        session_factory: Callable[[], Session],
    ):
        self.registry = registry
        self.session_factory = session_factory

    async def send_text(
        self,
        business_id: UUID,
        to: str | None,
        text: str,
        customer_id: UUID | None = None,
        is_ai: bool = False,
    ) -> dict[str, Any]:
        """
        Persist and send a text message.

        Args:
            business_id: Business UUID
            to: Customer address; empty means there is nobody to send to
            text: Message text
            customer_id: Customer UUID the message belongs to
            is_ai: Whether the assistant wrote the text

        Returns:
            Result dict with status "sent", "failed" or "skipped"
        """
        if not to:
            logger.warning(
                "No recipient address, not sending",
                extra={"business_id": str(business_id), "customer_id": str(customer_id)},
            )
            return {"status": "skipped", "reason": "no_address"}

        with self.session_factory() as db:
            repo = ConversationRepository(db)
            if customer_id is None:
                customer = repo.get_customer_by_phone(business_id, to)
                customer_id = customer.id if customer else None

            message = repo.create_message(
                business_id=business_id,
                customer_id=customer_id,
                direction=MessageDirection.OUTGOING,
                content=text,
                status=MessageStatus.PENDING,
                is_ai=is_ai,
            )
            db.commit()
            message_id = message.id

        result: dict[str, Any] = {"message_id": message_id, "to": to}

        try:
            response = await self.registry.send(business_id, to, text)
        except ChannelNotConnected as e:
            logger.warning(
                "Channel not connected, message not sent",
                extra={"business_id": str(business_id), "message_id": message_id},
            )
            self._mark(message_id, MessageStatus.FAILED, error_message=str(e))
            return {**result, "status": "failed", "error": e.code}

        if response.success:
            self._mark(message_id, MessageStatus.SENT, provider_message_id=response.message_id)
            logger.info(
                "Outgoing message sent",
                extra={
                    "business_id": str(business_id),
                    "message_id": message_id,
                    "provider_message_id": response.message_id,
                    "is_ai": is_ai,
                },
            )
            return {**result, "status": "sent", "provider_message_id": response.message_id}

        self._mark(message_id, MessageStatus.FAILED, error_message=response.error_message)
        logger.error(
            f"Failed to send message: {response.error_message}",
            extra={"business_id": str(business_id), "message_id": message_id, "error_code": response.error_code},
        )
        return {**result, "status": "failed", "error": response.error_code}

    def _mark(
        self,
        message_id: int,
        status: MessageStatus,
        provider_message_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        with self.session_factory() as db:
            ConversationRepository(db).update_message_status(
                message_id,
                status,
                provider_message_id=provider_message_id,
                error_message=error_message,
            )
            db.commit()
