"""Stub channel provider."""

from conversation_engine.providers.stub.client import StubChannelClient

__all__ = ["StubChannelClient"]
