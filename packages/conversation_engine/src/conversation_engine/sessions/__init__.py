"""Channel session lifecycle and outbound delivery."""

from conversation_engine.sessions.outbound import OutboundHandler
from conversation_engine.sessions.registry import ChannelSession, ChannelSessionRegistry

__all__ = [
    "ChannelSession",
    "ChannelSessionRegistry",
    "OutboundHandler",
]
