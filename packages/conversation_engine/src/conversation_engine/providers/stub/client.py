"""
Stub Channel Provider

Development provider that logs all operations without making real API calls.
Useful for local development and testing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from conversation_engine.contracts.events import (
    AuthFailed,
    ChannelEvent,
    Disconnected,
    MessageReceived,
    Paired,
    Ready,
)
from conversation_engine.providers.base import ChannelClient, ProviderResponse, SessionHandle

logger = logging.getLogger(__name__)


class StubChannelClient(ChannelClient):
    """
    Stub provider for development and testing.

    - Logs all outbound messages and keeps them in `sent_messages`
    - Hands out fake pairing codes
    - Generates fake message IDs
    - Can be configured to fail sends
    """

    def __init__(
        self,
        fail_sends: bool = False,
        open_delay: float = 0.0,
    ):
        self.fail_sends = fail_sends
        self.open_delay = open_delay
        self.sent_messages: list[dict[str, Any]] = []
        self.opened_sessions: list[str] = []
        self.closed_sessions: list[str] = []
        self.states: dict[str, str] = {}

    def instance_name_for(self, business_id: UUID) -> str:
        return f"stub-{business_id}"

    def business_id_for(self, instance_name: str) -> UUID | None:
        try:
            return UUID(instance_name.removeprefix("stub-"))
        except ValueError:
            return None

    async def open_session(self, business_id: UUID) -> SessionHandle:
        """Return a fake pairing code."""
        if self.open_delay:
            await asyncio.sleep(self.open_delay)

        instance_name = self.instance_name_for(business_id)
        self.opened_sessions.append(instance_name)
        self.states[instance_name] = "connecting"

        logger.info("[STUB] Opening session", extra={"instance": instance_name})
        return SessionHandle(instance_name=instance_name, qr=f"stub-qr:{uuid4().hex[:12]}")

    async def close_session(self, instance_name: str) -> bool:
        self.closed_sessions.append(instance_name)
        self.states[instance_name] = "close"
        logger.info("[STUB] Closing session", extra={"instance": instance_name})
        return True

    async def fetch_state(self, instance_name: str) -> str | None:
        return self.states.get(instance_name)

    async def send_text(
        self,
        instance_name: str,
        to: str,
        text: str,
    ) -> ProviderResponse:
        """Log and return success for text message."""
        message_id = f"stub_msg_{uuid4().hex[:16]}"

        self.sent_messages.append({
            "instance": instance_name,
            "to": to,
            "text": text,
            "message_id": message_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        logger.info(
            "[STUB] Sending text message",
            extra={
                "to": to,
                "text": text[:100] + "..." if len(text) > 100 else text,
                "message_id": message_id,
            },
        )

        if self.fail_sends:
            return ProviderResponse(
                success=False,
                error_code="STUB_SIMULATED_FAILURE",
                error_message="Simulated failure for testing",
            )

        return ProviderResponse(
            success=True,
            message_id=message_id,
            raw_response={"stub": True, "message_id": message_id},
        )

    def parse_event(self, payload: dict[str, Any]) -> list[ChannelEvent]:
        """
        Parse a simplified webhook payload for testing:
        {
            "business_id": "<uuid>",
            "event": "message" | "qr" | "ready" | "disconnected" | "auth_failed",
            "from": "5511999999999",
            "text": "Hello",
            "message_id": "test_123",
            "name": "Customer",
            "from_me": false
        }
        """
        try:
            business_id = UUID(str(payload["business_id"]))
        except (KeyError, ValueError):
            logger.warning("[STUB] Webhook without a valid business_id")
            return []

        event = payload.get("event", "message")

        if event == "qr":
            return [Paired(business_id=business_id, qr=payload.get("qr", "stub-qr"))]
        if event == "ready":
            return [Ready(business_id=business_id, identity=payload.get("phone"))]
        if event == "disconnected":
            return [Disconnected(business_id=business_id, reason=payload.get("reason"))]
        if event == "auth_failed":
            return [AuthFailed(business_id=business_id, reason=payload.get("reason"))]
        if event == "message" and "from" in payload:
            return [
                MessageReceived(
                    business_id=business_id,
                    sender=payload["from"],
                    text=payload.get("text"),
                    is_self=bool(payload.get("from_me", False)),
                    message_id=payload.get("message_id", f"stub_in_{uuid4().hex[:16]}"),
                    contact_name=payload.get("name"),
                    raw_payload=payload,
                )
            ]

        return []

    def get_sent_messages(self) -> list[dict[str, Any]]:
        """Get all sent messages (for testing)."""
        return self.sent_messages.copy()

    def clear_sent_messages(self) -> None:
        """Clear sent messages history (for testing)."""
        self.sent_messages.clear()
