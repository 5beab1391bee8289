"""
Conversation Engine Payload Models

Pydantic models for the administrative HTTP surface.
"""

from uuid import UUID

from pydantic import BaseModel, Field


class BusinessRequest(BaseModel):
    """Request body naming a business."""

    business_id: UUID = Field(..., description="Business UUID")


class SendMessageRequest(BaseModel):
    """Manual outbound message from the operator."""

    business_id: UUID = Field(..., description="Business UUID")
    to: str = Field(..., min_length=1, description="Customer channel address (phone)")
    message: str = Field(..., min_length=1, description="Message text")


class OrderRequest(BaseModel):
    """Request body naming an order."""

    order_id: UUID = Field(..., description="Order UUID")


class SendPaymentLinkRequest(BaseModel):
    """Send a checkout link for an order to a customer."""

    order_id: UUID = Field(..., description="Order UUID")
    business_id: UUID = Field(..., description="Business UUID")
    phone: str = Field(..., description="Customer channel address (phone)")


class ChannelStatusResponse(BaseModel):
    """Current channel state for a business."""

    business_id: UUID
    status: str = Field(..., description="pairing, connected, disconnected or auth_failed")
    qr: str | None = Field(None, description="Pairing code while pairing")
    phone_number: str | None = None
    last_connected_at: str | None = None
