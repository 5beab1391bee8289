"""
Payments

Merchant accounts, hosted checkouts and webhook reconciliation.
"""

from conversation_engine.payments.base import (
    CheckoutLineItem,
    CheckoutSession,
    MerchantAccount,
    PaymentGateway,
)
from conversation_engine.payments.lifecycle import PaymentLifecycleManager
from conversation_engine.payments.stripe_gateway import StripePaymentGateway
from conversation_engine.payments.stub_gateway import StubPaymentGateway

__all__ = [
    "CheckoutLineItem",
    "CheckoutSession",
    "MerchantAccount",
    "PaymentGateway",
    "PaymentLifecycleManager",
    "StripePaymentGateway",
    "StubPaymentGateway",
]
