"""
Payment Lifecycle Manager

Bridges orders to hosted checkouts and reconciles gateway webhooks:

    order (pending) --create_payment_session--> transaction (pending)
    transaction (pending) --checkout completed--> completed, order confirmed
    transaction (pending) --checkout expired/failed--> failed, order untouched

An order has at most one pending transaction: asking again for a checkout
returns the open one.

Webhook handling is idempotent: the pending -> completed/failed move is a
single conditional UPDATE, and only the delivery that wins it confirms the
order and messages the customer.
"""

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from conversation_engine.concurrency import KeyedLock
from conversation_engine.errors import (
    BusinessNotFound,
    OrderNotFound,
    OrderNotPayable,
    PaymentGatewayError,
    PaymentNotConfigured,
)
from conversation_engine.payments.base import CheckoutLineItem, PaymentGateway
from conversation_engine.persistence.models import OrderStatus, utcnow
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.sessions.outbound import OutboundHandler
from conversation_engine.templates import TemplateName, order_reference, render

logger = logging.getLogger(__name__)

COMPLETED_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})
FAILED_EVENTS = frozenset({
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
})


class PaymentLifecycleManager:
    """
    Payment collection for orders.

    Administrative operations (create_payment_session, create_merchant_account)
    raise on misconfiguration; webhook handling raises only InvalidSignature.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: PaymentGateway,
        outbound: OutboundHandler,
        frontend_url: str,
        currency: str = "usd",
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.outbound = outbound
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency
        self._session_locks = KeyedLock()
        self._order_locks = KeyedLock()

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_payment_session(self, order_id: UUID) -> str:
        """
        Open a hosted checkout for an order, or return the one already open.

        Args:
            order_id: Order UUID

        Returns:
            Checkout URL

        Raises:
            OrderNotFound: unknown order
            OrderNotPayable: the order is no longer pending
            PaymentNotConfigured: no enabled merchant account for the business
            PaymentGatewayError: gateway failure or timeout
        """
        async with self._order_locks.hold(order_id):
            return await self._open_checkout(order_id)

    async def _open_checkout(self, order_id: UUID) -> str:
        with self.session_factory() as db:
            repo = ConversationRepository(db)
            order = repo.get_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != OrderStatus.PENDING.value:
                raise OrderNotPayable(order_id, order.status)

            open_transaction = repo.get_pending_transaction(order_id)
            if open_transaction is not None:
                if open_transaction.checkout_url:
                    logger.info(
                        "Reusing open payment session",
                        extra={"order_id": str(order_id), "session_id": open_transaction.external_session_id},
                    )
                    return open_transaction.checkout_url
                # No link to hand out again; close it before opening a new one
                repo.fail_transaction_if_pending(open_transaction.external_session_id, utcnow())
                db.commit()

            settings = repo.get_payment_settings(order.business_id)
            if settings is None or not settings.external_account_id:
                raise PaymentNotConfigured(order.business_id, reason="missing_account")
            if not settings.enabled:
                raise PaymentNotConfigured(order.business_id, reason="disabled")

            business_id = order.business_id
            customer_id = order.customer_id
            account_id = settings.external_account_id
            currency = order.currency or self.currency
            amount = Decimal(order.total_amount)
            line_items = [
                CheckoutLineItem(
                    name=item["product"],
                    unit_amount=Decimal(str(item["unit_price"])),
                    quantity=int(item["quantity"]),
                )
                for item in order.items
            ]

        session = await self.gateway.create_checkout_session(
            account_id=account_id,
            line_items=line_items,
            currency=currency,
            metadata={
                "order_id": str(order_id),
                "business_id": str(business_id),
                "customer_id": str(customer_id) if customer_id else "",
            },
            success_url=f"{self.frontend_url}/payment/success?order_id={order_id}",
            cancel_url=f"{self.frontend_url}/payment/cancel?order_id={order_id}",
        )

        with self.session_factory() as db:
            ConversationRepository(db).create_transaction(
                business_id=business_id,
                order_id=order_id,
                external_session_id=session.id,
                checkout_url=session.url,
                amount=amount,
                currency=currency,
            )
            db.commit()

        logger.info(
            "Payment session created",
            extra={"order_id": str(order_id), "business_id": str(business_id), "session_id": session.id},
        )
        return session.url

    async def deliver_payment_link(
        self,
        order_id: UUID,
        address: str | None,
        business_id: UUID,
    ) -> dict[str, Any]:
        """
        Create a checkout for an order and send its link to the customer.

        Returns:
            Result dict with the checkout URL and the send result
        """
        url = await self.create_payment_session(order_id)

        with self.session_factory() as db:
            repo = ConversationRepository(db)
            order = repo.get_order(order_id)
            ai_settings = repo.get_ai_settings(business_id)
            language = ai_settings.language if ai_settings else None
            customer_id = order.customer_id
            text = render(
                TemplateName.PAYMENT_LINK,
                language,
                order_ref=order_reference(order.id),
                amount=f"{Decimal(order.total_amount):.2f}",
                currency=(order.currency or self.currency).upper(),
                url=url,
            )

        send_result = await self.outbound.send_text(
            business_id,
            address,
            text,
            customer_id=customer_id,
        )
        return {"url": url, "send": send_result}

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_gateway_webhook(self, raw_payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and apply a gateway webhook.

        Returns:
            Result dict; "duplicate" and "ignored" results are still accepted

        Raises:
            InvalidSignature: verification failed (nothing was changed)
        """
        event = self.gateway.verify_webhook(raw_payload, signature)
        event_type = event.get("type", "")
        checkout = (event.get("data") or {}).get("object") or {}
        session_id = checkout.get("id")

        logger.info(
            f"Payment webhook: {event_type}",
            extra={"event_id": event.get("id"), "session_id": session_id},
        )

        if not session_id or event_type not in COMPLETED_EVENTS | FAILED_EVENTS:
            return {"status": "ignored", "type": event_type}

        async with self._session_locks.hold(session_id):
            if event_type in COMPLETED_EVENTS:
                if checkout.get("payment_status") == "unpaid":
                    # Delayed payment methods: wait for async_payment_succeeded
                    return {"status": "ignored", "type": event_type, "reason": "awaiting_payment"}
                return await self._complete(session_id, checkout.get("payment_intent"))
            return self._fail(session_id)

    async def _complete(self, session_id: str, payment_id: str | None) -> dict[str, Any]:
        now = utcnow()

        with self.session_factory() as db:
            repo = ConversationRepository(db)
            if not repo.complete_transaction_if_pending(session_id, payment_id, now):
                db.rollback()
                logger.info("Duplicate or unknown checkout completion", extra={"session_id": session_id})
                return {"status": "duplicate", "session_id": session_id}

            transaction = repo.get_transaction_by_session(session_id)
            order = repo.get_order(transaction.order_id)
            confirmed = repo.confirm_order(order.id, now)
            db.commit()

            order_id = order.id
            if not confirmed:
                logger.warning(
                    f"Checkout completed for an order already {order.status}",
                    extra={"order_id": str(order_id), "session_id": session_id},
                )
                return {"status": "already_confirmed", "order_id": str(order_id), "session_id": session_id}

            business_id = order.business_id
            customer_id = order.customer_id
            customer = repo.get_customer(customer_id) if customer_id else None
            address = customer.phone if customer else order.contact_phone
            ai_settings = repo.get_ai_settings(business_id)
            text = render(
                TemplateName.PAYMENT_CONFIRMED,
                ai_settings.language if ai_settings else None,
                order_ref=order_reference(order_id),
                amount=f"{Decimal(transaction.amount):.2f}",
                currency=(transaction.currency or self.currency).upper(),
            )

        logger.info(
            "Order paid",
            extra={"order_id": str(order_id), "business_id": str(business_id), "session_id": session_id},
        )

        send_result = await self.outbound.send_text(business_id, address, text, customer_id=customer_id)
        return {
            "status": "confirmed",
            "order_id": str(order_id),
            "session_id": session_id,
            "notification": send_result.get("status"),
        }

    def _fail(self, session_id: str) -> dict[str, Any]:
        with self.session_factory() as db:
            repo = ConversationRepository(db)
            if not repo.fail_transaction_if_pending(session_id, utcnow()):
                db.rollback()
                return {"status": "duplicate", "session_id": session_id}
            db.commit()

        logger.info("Checkout session failed", extra={"session_id": session_id})
        return {"status": "failed", "session_id": session_id}

    # =========================================================================
    # Merchant accounts
    # =========================================================================

    async def create_merchant_account(self, business_id: UUID) -> str:
        """
        Provision the business's merchant account and return an onboarding URL.

        An existing account is reused; only a new onboarding link is issued.
        The account stays disabled until the owner enables payments.

        Raises:
            BusinessNotFound: unknown business
            PaymentGatewayError: gateway failure or timeout
        """
        with self.session_factory() as db:
            repo = ConversationRepository(db)
            business = repo.get_business(business_id)
            if business is None:
                raise BusinessNotFound(business_id)
            owner_email = business.owner_email
            settings = repo.get_payment_settings(business_id)
            account_id = settings.external_account_id if settings else None

        if not account_id:
            account_id = await self.gateway.create_account(owner_email)
            with self.session_factory() as db:
                ConversationRepository(db).upsert_payment_settings(
                    business_id,
                    external_account_id=account_id,
                )
                db.commit()

        settings_url = f"{self.frontend_url}/dashboard/settings?tab=payment"
        url = await self.gateway.create_onboarding_link(
            account_id,
            refresh_url=settings_url,
            return_url=f"{settings_url}&success=true",
        )

        logger.info(
            "Merchant onboarding link issued",
            extra={"business_id": str(business_id), "account_id": account_id},
        )
        return url

    async def is_payment_enabled(self, business_id: UUID) -> bool:
        """
        Whether orders of the business can be charged right now.

        True only when an account exists, the owner enabled it, and the
        gateway reports it can accept charges. Gateway failures read as False.
        """
        with self.session_factory() as db:
            settings = ConversationRepository(db).get_payment_settings(business_id)
            if settings is None or not settings.external_account_id or not settings.enabled:
                return False
            account_id = settings.external_account_id

        try:
            account = await self.gateway.retrieve_account(account_id)
        except PaymentGatewayError as e:
            logger.warning(
                f"Could not check merchant account: {e}",
                extra={"business_id": str(business_id), "account_id": account_id},
            )
            return False

        return account.charges_enabled

    def set_payments_enabled(self, business_id: UUID, enabled: bool) -> bool:
        """
        Turn payment collection on or off for a business.

        Raises:
            PaymentNotConfigured: no merchant account yet
        """
        with self.session_factory() as db:
            repo = ConversationRepository(db)
            settings = repo.get_payment_settings(business_id)
            if settings is None or not settings.external_account_id:
                raise PaymentNotConfigured(business_id, reason="missing_account")
            repo.upsert_payment_settings(business_id, enabled=enabled)
            db.commit()

        logger.info("Payments toggled", extra={"business_id": str(business_id), "enabled": enabled})
        return enabled
