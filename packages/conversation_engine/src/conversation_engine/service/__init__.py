"""
Conversation Service

Inbound pipeline, order resolution and channel event dispatch.
"""

from conversation_engine.service.dispatcher import ChannelEventDispatcher
from conversation_engine.service.inbound_handler import InboundHandler
from conversation_engine.service.order_resolver import OrderResolver

__all__ = [
    "ChannelEventDispatcher",
    "InboundHandler",
    "OrderResolver",
]
