"""
Inbound Message Handler

Processes one incoming channel message:
1. Skips self-sent and already stored messages
2. Resolves (or creates) the customer
3. Persists the incoming message
4. Checks whether the assistant is enabled
5. Builds context, runs inference and resolves the outcome
   (falling back to an apology if any of that fails)

Messages from the same customer are processed one at a time, in arrival order.
"""

import logging
from collections.abc import Callable
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conversation_engine.ai.context import ContextBuilder
from conversation_engine.ai.gateway import InferenceGateway
from conversation_engine.ai.schema import Unavailable
from conversation_engine.concurrency import KeyedLock
from conversation_engine.contracts.events import MessageReceived
from conversation_engine.errors import ConversationEngineError, CustomerResolutionFailed
from conversation_engine.persistence.models import MessageDirection, MessageStatus
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.service.order_resolver import OrderResolver

logger = logging.getLogger(__name__)


class InboundHandler:
    """
    Message ingestion pipeline.

    Failures are contained per message: a broken message is logged and
    reported in the result, never raised to the dispatcher.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        context_builder: ContextBuilder,
        inference: InferenceGateway,
        resolver: OrderResolver,
        channel: str = "whatsapp",
    ):
        self.session_factory = session_factory
        self.context_builder = context_builder
        self.inference = inference
        self.resolver = resolver
        self.channel = channel
        self._conversation_locks = KeyedLock()

    async def ingest(self, business_id: UUID, event: MessageReceived) -> dict[str, Any]:
        """
        Process a single inbound message.

        Every message that is not self-sent is stored exactly once. Anything
        that fails after storage is answered with the apology template.

        Args:
            business_id: Business the channel session belongs to
            event: Message event from the channel

        Returns:
            Processing result dict
        """
        result: dict[str, Any] = {
            "message_id": event.message_id,
            "from": event.sender,
            "status": "processed",
        }

        if event.is_self:
            return {**result, "status": "skipped", "reason": "self_sent"}
        if not event.sender:
            return {**result, "status": "skipped", "reason": "no_sender"}

        async with self._conversation_locks.hold((business_id, event.sender)):
            try:
                stored = self._store_incoming(business_id, event)
            except (ConversationEngineError, SQLAlchemyError) as e:
                logger.error(
                    f"Failed to store inbound message: {e}",
                    extra={"business_id": str(business_id), "provider_message_id": event.message_id},
                    exc_info=True,
                )
                return {**result, "status": "failed", "error": str(e)}

            if stored is None:
                logger.debug(f"Message {event.message_id} already processed, skipping")
                return {**result, "status": "skipped", "reason": "already_processed"}

            result["customer_id"] = str(stored["customer_id"])
            result["stored_message_id"] = stored["message_id"]

            if not event.text:
                # Media without caption, reactions, etc.
                return {**result, "ai": "skipped", "reason": "no_text"}

            if not stored["assistant_enabled"]:
                logger.info(
                    "Assistant disabled, not replying",
                    extra={"business_id": str(business_id), "customer_id": str(stored["customer_id"])},
                )
                return {**result, "ai": "disabled"}

            try:
                resolution = await self._answer(business_id, stored, event)
            except Exception as e:
                logger.error(
                    f"Failed to answer inbound message, sending apology: {e}",
                    extra={"business_id": str(business_id), "customer_id": str(stored["customer_id"])},
                    exc_info=True,
                )
                resolution = await self._apologize(business_id, stored, event.sender)
            result.update(resolution)

        return result

    async def _answer(self, business_id: UUID, stored: dict[str, Any], event: MessageReceived) -> dict[str, Any]:
        with self.session_factory() as db:
            prompt = self.context_builder.build(
                db,
                business_id,
                stored["customer_id"],
                event.text,
                current_message_id=stored["message_id"],
            )

        outcome = await self.inference.complete(prompt)
        return await self.resolver.resolve(
            business_id=business_id,
            customer_id=stored["customer_id"],
            customer_address=event.sender,
            outcome=outcome,
            language=prompt.language,
        )

    async def _apologize(self, business_id: UUID, stored: dict[str, Any], address: str) -> dict[str, Any]:
        try:
            return await self.resolver.resolve(
                business_id=business_id,
                customer_id=stored["customer_id"],
                customer_address=address,
                outcome=Unavailable(reason="pipeline_error"),
                language=stored["language"],
            )
        except Exception as e:
            logger.error(
                f"Apology could not be sent: {e}",
                extra={"business_id": str(business_id), "customer_id": str(stored["customer_id"])},
                exc_info=True,
            )
            return {"status": "failed", "error": str(e)}

    def _store_incoming(self, business_id: UUID, event: MessageReceived) -> dict[str, Any] | None:
        """
        Persist the customer and message.

        Returns:
            Dict with customer_id, message_id, assistant_enabled and language,
            or None if the message was stored before
        """
        with self.session_factory() as db:
            repo = ConversationRepository(db)

            if event.message_id and repo.is_message_processed(event.message_id):
                return None

            try:
                customer, created = repo.get_or_create_customer(
                    business_id=business_id,
                    phone=event.sender,
                    name=event.contact_name,
                    source=self.channel,
                )
            except SQLAlchemyError as e:
                db.rollback()
                raise CustomerResolutionFailed(business_id, event.sender) from e

            if created:
                logger.info(
                    "New customer",
                    extra={"business_id": str(business_id), "customer_id": str(customer.id)},
                )

            message = repo.create_message(
                business_id=business_id,
                customer_id=customer.id,
                direction=MessageDirection.INCOMING,
                content=event.text or "",
                status=MessageStatus.RECEIVED,
                channel=self.channel,
                provider_message_id=event.message_id,
            )
            db.commit()

            ai_settings = repo.get_ai_settings(business_id)
            return {
                "customer_id": customer.id,
                "message_id": message.id,
                "assistant_enabled": ai_settings is not None and ai_settings.enabled,
                "language": ai_settings.language if ai_settings else None,
            }
