"""
Channel Status Producer

Publishes channel session transitions to per-business Redis Streams so
dashboards can follow pairing (QR codes) and connection state.
"""

import logging
from uuid import UUID

import redis

from basecore.redis import publish_to_stream
from conversation_engine.contracts.status_event import ChannelStatusEvent

logger = logging.getLogger(__name__)

STATUS_STREAM_PREFIX = "channel:status"


def status_stream_name(business_id: UUID) -> str:
    """Stream carrying a business's channel transitions."""
    return f"{STATUS_STREAM_PREFIX}:{business_id}"


class ChannelStatusProducer:
    """Writes ChannelStatusEvents to their business's stream."""

    def __init__(self, redis_client: redis.Redis, max_len: int = 1000):
        self.redis = redis_client
        self.max_len = max_len

    def publish(self, event: ChannelStatusEvent) -> str | None:
        """
        Publish one transition.

        Observers are best effort: a Redis outage is logged and never
        blocks the session transition that triggered it.

        Returns:
            Stream message ID, or None if publishing failed
        """
        stream_name = status_stream_name(event.business_id)

        try:
            msg_id = publish_to_stream(
                stream_name,
                event.to_stream_data(),
                max_len=self.max_len,
                client=self.redis,
            )
        except redis.RedisError as e:
            logger.warning(
                f"Failed to publish channel status: {e}",
                extra={"stream": stream_name, "event_type": event.event_type.value},
            )
            return None

        logger.debug(
            f"Published {event.event_type.value} to {stream_name}",
            extra={"event_id": str(event.event_id), "msg_id": msg_id},
        )
        return msg_id
