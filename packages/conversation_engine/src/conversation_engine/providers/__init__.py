"""
Channel Providers

Provider implementations for messaging channels.
Supports Evolution API (production) and Stub (development).
"""

from conversation_engine.providers.base import (
    ChannelClient,
    ProviderError,
    ProviderResponse,
    SessionHandle,
)

__all__ = [
    "ChannelClient",
    "ProviderError",
    "ProviderResponse",
    "SessionHandle",
]
