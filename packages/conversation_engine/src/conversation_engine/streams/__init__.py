"""Redis Streams publishing for conversation engine observers."""

from conversation_engine.streams.producer import (
    STATUS_STREAM_PREFIX,
    ChannelStatusProducer,
    status_stream_name,
)

__all__ = [
    "STATUS_STREAM_PREFIX",
    "ChannelStatusProducer",
    "status_stream_name",
]
