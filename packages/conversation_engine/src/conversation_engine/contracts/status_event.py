"""
Channel Status Events

What observers (dashboards, the CLI, other processes) see of a business's
channel session. One stream entry per transition, flat string fields so
any Redis client can read them without decoding nested JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4


class ChannelStatusEventType(str, Enum):
    """Channel session transitions."""

    PAIRING = "channel.pairing"
    CONNECTED = "channel.connected"
    DISCONNECTED = "channel.disconnected"
    AUTH_FAILED = "channel.auth_failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ChannelStatusEvent:
    """One session transition as published to the business's status stream."""

    event_type: ChannelStatusEventType
    business_id: UUID
    status: str
    qr: str | None = None
    phone_number: str | None = None
    reason: str | None = None
    last_connected_at: datetime | None = None
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=_utcnow)

    def to_stream_data(self) -> dict[str, str]:
        """Stream fields; missing values are empty strings."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "business_id": str(self.business_id),
            "status": self.status,
            "qr": self.qr or "",
            "phone_number": self.phone_number or "",
            "reason": self.reason or "",
            "last_connected_at": self.last_connected_at.isoformat() if self.last_connected_at else "",
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_stream_data(cls, data: dict[str, str]) -> "ChannelStatusEvent":
        return cls(
            event_type=ChannelStatusEventType(data["event_type"]),
            business_id=UUID(data["business_id"]),
            status=data.get("status", ""),
            qr=data.get("qr") or None,
            phone_number=data.get("phone_number") or None,
            reason=data.get("reason") or None,
            last_connected_at=_parse_time(data.get("last_connected_at")),
            event_id=UUID(data["event_id"]),
            occurred_at=_parse_time(data.get("occurred_at")) or _utcnow(),
        )
