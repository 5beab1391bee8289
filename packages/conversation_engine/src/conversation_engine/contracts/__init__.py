"""
Conversation Engine Contracts

Channel events, channel status events and HTTP payload models.
"""

from conversation_engine.contracts.events import (
    AuthFailed,
    ChannelEvent,
    Disconnected,
    MessageReceived,
    Paired,
    Ready,
)
from conversation_engine.contracts.status_event import ChannelStatusEvent, ChannelStatusEventType

__all__ = [
    "ChannelEvent",
    "Paired",
    "Ready",
    "Disconnected",
    "AuthFailed",
    "MessageReceived",
    "ChannelStatusEvent",
    "ChannelStatusEventType",
]
