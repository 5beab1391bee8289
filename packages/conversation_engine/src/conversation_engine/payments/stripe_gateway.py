"""
Stripe Connect Payment Gateway

Express accounts for businesses, hosted Checkout Sessions created on the
connected account, and signed webhooks.

The Stripe SDK is blocking; every call runs in a worker thread and is
bounded by `timeout`.
"""

import asyncio
import functools
import json
import logging
from collections.abc import Callable
from typing import Any

import stripe

from conversation_engine.errors import InvalidSignature, PaymentGatewayError
from conversation_engine.payments.base import (
    CheckoutLineItem,
    CheckoutSession,
    MerchantAccount,
    PaymentGateway,
    to_minor_units,
)

logger = logging.getLogger(__name__)


class StripePaymentGateway(PaymentGateway):
    """Stripe implementation of the payment gateway."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        timeout: float = 20.0,
    ):
        """
        Initialize Stripe gateway.

        Args:
            secret_key: Platform secret key (sent per request, not set globally)
            webhook_secret: Endpoint secret used to verify webhook signatures
            timeout: Upper bound for each Stripe call, in seconds
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe call in a thread with a timeout."""
        if not self.secret_key:
            raise PaymentGatewayError("Stripe secret key is not configured", code="MISSING_CREDENTIALS")

        call = functools.partial(fn, *args, api_key=self.secret_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise PaymentGatewayError(
                f"Stripe {operation} timed out",
                code="TIMEOUT",
                retryable=True,
            ) from e
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {operation} failed: {e.user_message or e}",
                extra={"stripe_code": e.code, "http_status": e.http_status},
            )
            raise PaymentGatewayError(
                str(e.user_message or e),
                code=e.code or "STRIPE_ERROR",
                details={"http_status": e.http_status},
                retryable=bool(e.http_status and e.http_status >= 500),
            ) from e

    async def create_checkout_session(
        self,
        account_id: str,
        line_items: list[CheckoutLineItem],
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session = await self._call(
            "checkout.Session.create",
            stripe.checkout.Session.create,
            stripe_account=account_id,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": item.name},
                        "unit_amount": to_minor_units(item.unit_amount),
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )

        logger.info(
            "Created Stripe checkout session",
            extra={"session_id": session.id, "account_id": account_id, **metadata},
        )
        return CheckoutSession(id=session.id, url=session.url)

    async def create_account(self, email: str | None) -> str:
        account = await self._call(
            "Account.create",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
        )
        logger.info("Created Stripe connected account", extra={"account_id": account.id})
        return account.id

    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        link = await self._call(
            "AccountLink.create",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link.url

    async def retrieve_account(self, account_id: str) -> MerchantAccount:
        account = await self._call("Account.retrieve", stripe.Account.retrieve, account_id)
        return MerchantAccount(
            id=account.id,
            charges_enabled=bool(account.charges_enabled),
            details_submitted=bool(getattr(account, "details_submitted", False)),
        )

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not self.webhook_secret:
            # No secret, no trust
            raise InvalidSignature("Webhook secret is not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Invalid Stripe signature: {e}") from e
        except ValueError as e:
            raise InvalidSignature(f"Invalid webhook payload: {e}") from e

        return json.loads(payload)
