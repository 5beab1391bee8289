"""
Channel Events

Typed events produced by channel clients from provider webhooks.
Lifecycle events drive the session registry; MessageReceived drives the
ingestion pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class ChannelEvent:
    """Base class for all channel events."""

    business_id: UUID


@dataclass(frozen=True)
class Paired(ChannelEvent):
    """A pairing code (QR payload) is available for the business."""

    qr: str


@dataclass(frozen=True)
class Ready(ChannelEvent):
    """The session is connected; identity is the business's own address."""

    identity: str | None = None


@dataclass(frozen=True)
class Disconnected(ChannelEvent):
    """The session closed."""

    reason: str | None = None


@dataclass(frozen=True)
class AuthFailed(ChannelEvent):
    """The session lost its credentials and must be paired again."""

    reason: str | None = None


@dataclass(frozen=True)
class MessageReceived(ChannelEvent):
    """A text message arrived on the business's channel."""

    sender: str
    text: str | None
    is_self: bool = False
    message_id: str | None = None
    contact_name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
