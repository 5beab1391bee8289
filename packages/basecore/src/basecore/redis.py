"""
Redis helpers for basecore.

Only stream writes and tail reads are needed: channel status observers
append to a stream and the CLI shows its newest entries.
"""

import functools
from typing import Any

import redis

from basecore.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """Shared client for REDIS_URL, created on first use with decoded responses."""
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)


def publish_to_stream(
    stream_name: str,
    data: dict[str, Any],
    max_len: int | None = 10000,
    client: redis.Redis | None = None,
) -> str:
    """
    Append an entry to a stream.

    Args:
        stream_name: Stream key
        data: Entry fields; non-string values are stringified
        max_len: Approximate cap on the stream length, None keeps everything
        client: Client override (tests pass a fake)

    Returns:
        ID of the new entry
    """
    client = client or get_redis_client()
    fields = {key: value if isinstance(value, str) else str(value) for key, value in data.items()}

    if max_len is None:
        return client.xadd(stream_name, fields)
    return client.xadd(stream_name, fields, maxlen=max_len, approximate=True)


def read_latest(
    stream_name: str,
    count: int = 10,
    client: redis.Redis | None = None,
) -> list[tuple[str, dict[str, str]]]:
    """
    Newest entries of a stream, most recent first.

    Returns:
        (entry_id, fields) pairs
    """
    client = client or get_redis_client()
    return [(entry_id, fields) for entry_id, fields in client.xrevrange(stream_name, count=count)]
