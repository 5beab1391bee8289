"""
Stub Payment Gateway

Development gateway that fakes accounts and checkout sessions without
network calls. Webhooks are signed with HMAC-SHA256 over the raw body so
signature handling can be exercised end to end.
"""

import hashlib
import hmac
import json
import logging
from typing import Any
from uuid import uuid4

from conversation_engine.errors import InvalidSignature, PaymentGatewayError
from conversation_engine.payments.base import (
    CheckoutLineItem,
    CheckoutSession,
    MerchantAccount,
    PaymentGateway,
)

logger = logging.getLogger(__name__)


class StubPaymentGateway(PaymentGateway):
    """
    Stub gateway for development and testing.

    - Accounts are charge-enabled unless listed in `restricted_accounts`
    - Checkout sessions point at a local fake URL
    - Can be configured to fail every call
    """

    def __init__(
        self,
        webhook_secret: str = "whsec_stub",
        fail_calls: bool = False,
    ):
        self.webhook_secret = webhook_secret
        self.fail_calls = fail_calls
        self.sessions: list[dict[str, Any]] = []
        self.accounts: list[dict[str, Any]] = []
        self.restricted_accounts: set[str] = set()

    def _check(self, operation: str) -> None:
        if self.fail_calls:
            raise PaymentGatewayError(f"[STUB] {operation} failed", code="STUB_SIMULATED_FAILURE")

    async def create_checkout_session(
        self,
        account_id: str,
        line_items: list[CheckoutLineItem],
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        self._check("create_checkout_session")

        session_id = f"cs_stub_{uuid4().hex[:24]}"
        url = f"https://checkout.stub.local/pay/{session_id}"
        self.sessions.append({
            "id": session_id,
            "url": url,
            "account_id": account_id,
            "line_items": line_items,
            "currency": currency,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })

        logger.info("[STUB] Created checkout session", extra={"session_id": session_id, **metadata})
        return CheckoutSession(id=session_id, url=url)

    async def create_account(self, email: str | None) -> str:
        self._check("create_account")
        account_id = f"acct_stub_{uuid4().hex[:16]}"
        self.accounts.append({"id": account_id, "email": email})
        logger.info("[STUB] Created merchant account", extra={"account_id": account_id})
        return account_id

    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        self._check("create_onboarding_link")
        return f"https://connect.stub.local/onboarding/{account_id}"

    async def retrieve_account(self, account_id: str) -> MerchantAccount:
        self._check("retrieve_account")
        enabled = account_id not in self.restricted_accounts
        return MerchantAccount(id=account_id, charges_enabled=enabled, details_submitted=enabled)

    def sign(self, payload: bytes) -> str:
        """Signature header value for a payload (for testing)."""
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise InvalidSignature()

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignature(f"Invalid webhook payload: {e}") from e

        if not isinstance(event, dict):
            raise InvalidSignature("Webhook payload is not an object")
        return event
