"""
Intent & Order Resolver

Acts on an inference outcome:
1. Sends the reply (or an apology when the model was unavailable)
2. Creates a pending order when the customer ordered something
3. Hands the order to payments when the business collects payments
"""

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from conversation_engine.ai.schema import (
    InferenceOutcome,
    Intent,
    OrderPayload,
    Parsed,
    Unavailable,
    Unparsed,
)
from conversation_engine.payments.lifecycle import PaymentLifecycleManager
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.sessions.outbound import OutboundHandler
from conversation_engine.templates import TemplateName, render

logger = logging.getLogger(__name__)


class OrderResolver:
    """
    Turns assistant output into messages, orders and payment links.

    Nothing here raises: failures after the reply went out are logged and
    the order is left pending.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        outbound: OutboundHandler,
        payments: PaymentLifecycleManager,
        default_unit_price: Decimal = Decimal("100"),
        currency: str = "usd",
    ):
        self.session_factory = session_factory
        self.outbound = outbound
        self.payments = payments
        self.default_unit_price = default_unit_price
        self.currency = currency

    async def resolve(
        self,
        business_id: UUID,
        customer_id: UUID,
        customer_address: str,
        outcome: InferenceOutcome,
        language: str | None = None,
    ) -> dict[str, Any]:
        """
        Reply to the customer and act on their intent.

        Args:
            business_id: Business UUID
            customer_id: Customer UUID
            customer_address: Customer channel address (phone)
            outcome: Tagged inference result
            language: Business language for engine-authored texts

        Returns:
            Result dict (reply send status, intent, order and payment info)
        """
        order_payload: OrderPayload | None = None

        if isinstance(outcome, Parsed):
            reply_text = outcome.reply.reply
            intent = outcome.reply.intent
            order_payload = outcome.reply.order
        elif isinstance(outcome, Unparsed):
            # Free text from the model is still a usable answer
            reply_text = outcome.raw_text or render(TemplateName.APOLOGY, language)
            intent = Intent.QUESTION
        elif isinstance(outcome, Unavailable):
            reply_text = render(TemplateName.APOLOGY, language)
            intent = Intent.QUESTION
        else:
            raise TypeError(f"Unexpected inference outcome: {outcome!r}")

        send_result = await self.outbound.send_text(
            business_id,
            customer_address,
            reply_text,
            customer_id=customer_id,
            is_ai=True,
        )

        result: dict[str, Any] = {
            "intent": intent.value,
            "reply": send_result.get("status"),
            "outcome": type(outcome).__name__.lower(),
        }

        if intent != Intent.ORDER or order_payload is None:
            return result

        try:
            order_id = self._create_order(business_id, customer_id, customer_address, order_payload)
        except Exception as e:
            logger.error(
                f"Failed to create order: {e}",
                extra={"business_id": str(business_id), "customer_id": str(customer_id)},
                exc_info=True,
            )
            result["order"] = "failed"
            return result

        result["order_id"] = str(order_id)
        result["payment"] = await self._hand_off_payment(business_id, order_id, customer_address)
        return result

    def unit_price_for(self, db: Session, business_id: UUID, product: str) -> Decimal:
        """Catalog price of a product, or the default price for unknown products."""
        catalog_entry = ConversationRepository(db).find_product(business_id, product)
        if catalog_entry is None:
            logger.info(
                "Product not in catalog, using default unit price",
                extra={"business_id": str(business_id), "product": product},
            )
            return self.default_unit_price
        return Decimal(catalog_entry.unit_price)

    def _create_order(
        self,
        business_id: UUID,
        customer_id: UUID,
        customer_address: str,
        payload: OrderPayload,
    ) -> UUID:
        with self.session_factory() as db:
            unit_price = self.unit_price_for(db, business_id, payload.product)
            total = unit_price * payload.quantity

            order = ConversationRepository(db).create_order(
                business_id=business_id,
                customer_id=customer_id,
                items=[{
                    "product": payload.product,
                    "quantity": payload.quantity,
                    "unit_price": str(unit_price),
                }],
                total_amount=total,
                currency=self.currency,
                delivery_address=payload.address,
                contact_phone=payload.phone or customer_address,
            )
            db.commit()
            order_id = order.id

        logger.info(
            "Order created from conversation",
            extra={
                "business_id": str(business_id),
                "order_id": str(order_id),
                "product": payload.product,
                "quantity": payload.quantity,
                "total": str(total),
            },
        )
        return order_id

    async def _hand_off_payment(self, business_id: UUID, order_id: UUID, address: str) -> str:
        try:
            if not await self.payments.is_payment_enabled(business_id):
                return "disabled"
            delivery = await self.payments.deliver_payment_link(order_id, address, business_id)
        except Exception as e:
            logger.error(
                f"Payment hand-off failed, order stays pending: {e}",
                extra={"business_id": str(business_id), "order_id": str(order_id)},
                exc_info=True,
            )
            return "failed"

        return "link_sent" if delivery["send"].get("status") == "sent" else "link_not_sent"
