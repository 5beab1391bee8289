"""
Conversation Engine Errors

Exceptions raised by the conversation engine. Pipeline code contains and
logs them; administrative operations let them reach the caller.
"""

from typing import Any


class ConversationEngineError(Exception):
    """Base error for the conversation engine."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ChannelNotConnected(ConversationEngineError):
    """No connected channel session exists for the business."""

    def __init__(self, business_id: Any):
        super().__init__(
            f"No connected channel session for business {business_id}",
            code="CHANNEL_NOT_CONNECTED",
            details={"business_id": str(business_id)},
        )


class PaymentNotConfigured(ConversationEngineError):
    """The business has no usable merchant account."""

    def __init__(self, business_id: Any, reason: str = "missing_account"):
        super().__init__(
            f"Payments are not configured for business {business_id} ({reason})",
            code="PAYMENT_NOT_CONFIGURED",
            details={"business_id": str(business_id), "reason": reason},
        )


class InvalidSignature(ConversationEngineError):
    """A payment webhook failed signature verification."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="INVALID_SIGNATURE")


class InferenceUnavailable(ConversationEngineError):
    """The AI gateway could not be reached or timed out."""

    def __init__(self, reason: str):
        super().__init__(f"Inference unavailable: {reason}", code="INFERENCE_UNAVAILABLE")
        self.reason = reason


class MalformedInferenceResponse(ConversationEngineError):
    """The model answered with text that is not the expected JSON object."""

    def __init__(self, raw_text: str, reason: str):
        super().__init__(f"Malformed inference response: {reason}", code="MALFORMED_INFERENCE_RESPONSE")
        self.raw_text = raw_text
        self.reason = reason


class OrderNotFound(ConversationEngineError):
    """Order id does not exist."""

    def __init__(self, order_id: Any):
        super().__init__(
            f"Order {order_id} not found",
            code="ORDER_NOT_FOUND",
            details={"order_id": str(order_id)},
        )


class OrderNotPayable(ConversationEngineError):
    """The order is no longer waiting for payment."""

    def __init__(self, order_id: Any, status: str):
        super().__init__(
            f"Order {order_id} cannot be paid (status: {status})",
            code="ORDER_NOT_PAYABLE",
            details={"order_id": str(order_id), "status": status},
        )


class BusinessNotFound(ConversationEngineError):
    """Business id does not exist."""

    def __init__(self, business_id: Any):
        super().__init__(
            f"Business {business_id} not found",
            code="BUSINESS_NOT_FOUND",
            details={"business_id": str(business_id)},
        )


class CustomerResolutionFailed(ConversationEngineError):
    """Customer lookup or creation failed for an inbound event."""

    def __init__(self, business_id: Any, address: str):
        super().__init__(
            f"Could not resolve customer {address} for business {business_id}",
            code="CUSTOMER_RESOLUTION_FAILED",
            details={"business_id": str(business_id), "address": address},
        )


class PaymentGatewayError(ConversationEngineError):
    """Error from the payment gateway (including timeouts)."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable
