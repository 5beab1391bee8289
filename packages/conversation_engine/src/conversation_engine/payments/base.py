"""
Payment Gateway Base

Abstract interface for payment gateways.
Implementations: Stripe Connect (production), Stub (development).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass
class CheckoutLineItem:
    """One line of a hosted checkout."""

    name: str
    unit_amount: Decimal
    quantity: int


@dataclass
class CheckoutSession:
    """Hosted checkout opened on a merchant account."""

    id: str
    url: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class MerchantAccount:
    """Capabilities reported for a merchant account."""

    id: str
    charges_enabled: bool
    details_submitted: bool = False
    raw_response: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """
    Abstract interface for payment gateways.

    Network calls are async and bounded by the implementation's timeout;
    failures raise PaymentGatewayError.
    """

    @abstractmethod
    async def create_checkout_session(
        self,
        account_id: str,
        line_items: list[CheckoutLineItem],
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Open a hosted checkout scoped to a merchant account.

        Returns:
            CheckoutSession with the URL to send to the customer
        """
        ...

    @abstractmethod
    async def create_account(self, email: str | None) -> str:
        """
        Provision a merchant account for a business owner.

        Returns:
            Gateway account ID
        """
        ...

    @abstractmethod
    async def create_onboarding_link(
        self,
        account_id: str,
        refresh_url: str,
        return_url: str,
    ) -> str:
        """
        Create an onboarding link for a merchant account.

        Returns:
            URL the owner opens to finish onboarding
        """
        ...

    @abstractmethod
    async def retrieve_account(self, account_id: str) -> MerchantAccount:
        """Fetch the current capabilities of a merchant account."""
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify a signed webhook and return the event.

        Args:
            payload: Raw request body, exactly as received
            signature: Signature header value

        Returns:
            Event as a plain dict ({"id", "type", "data": {"object": {...}}})

        Raises:
            InvalidSignature: the signature does not match the payload
        """
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))
