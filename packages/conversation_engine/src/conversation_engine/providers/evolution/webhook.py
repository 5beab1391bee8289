"""
Evolution API Webhook Utilities

Helper functions for processing Evolution API webhooks.

Evolution webhook format:
{
    "event": "messages.upsert" | "qrcode.updated" | "connection.update",
    "instance": "instance_name",
    "sender": "5511999999999@s.whatsapp.net",
    "data": {...}
}
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from conversation_engine.contracts.events import (
    AuthFailed,
    ChannelEvent,
    Disconnected,
    MessageReceived,
    Paired,
    Ready,
)

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "messages.upsert"
QRCODE_EVENT = "qrcode.updated"
CONNECTION_EVENT = "connection.update"

# Baileys closes with 401 when the phone removed the linked device
LOGGED_OUT_STATUS = 401


def extract_instance_name(payload: dict[str, Any]) -> str | None:
    """
    Extract instance name from webhook payload.

    This is used for business resolution before full parsing.
    """
    instance = payload.get("instance")
    if isinstance(instance, dict):
        return instance.get("instanceName")
    return instance


def jid_to_phone(jid: str | None) -> str:
    """Strip the WhatsApp JID suffix ("5511...@s.whatsapp.net" -> "5511...")."""
    if not jid:
        return ""
    return jid.split("@", 1)[0].split(":", 1)[0]


def validate_api_key(request_headers: dict[str, str], expected_api_key: str) -> bool:
    """
    Validate API key from request headers.

    Evolution API can send API key in:
    - Header: "apikey"
    - Header: "Authorization: Bearer <key>"
    """
    headers = {k.lower(): v for k, v in request_headers.items()}

    if headers.get("apikey") == expected_api_key:
        return True

    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:] == expected_api_key:
        return True

    return False


def parse_evolution_event(payload: dict[str, Any], business_id: UUID) -> list[ChannelEvent]:
    """
    Translate an Evolution webhook into channel events for a business.

    Args:
        payload: Parsed JSON webhook payload
        business_id: Business owning the instance

    Returns:
        Channel events; unknown events yield an empty list
    """
    event = (payload.get("event") or "").lower().replace("_", ".")
    data = payload.get("data") or {}

    if event == QRCODE_EVENT:
        qrcode = data.get("qrcode") or {}
        qr = qrcode.get("base64") or qrcode.get("code")
        return [Paired(business_id=business_id, qr=qr)] if qr else []

    if event == CONNECTION_EVENT:
        return _parse_connection_update(payload, data, business_id)

    if event == MESSAGE_EVENT:
        if isinstance(data, list):
            entries = data
        elif isinstance(data.get("messages"), list):
            entries = data["messages"]
        else:
            entries = [data]

        events: list[ChannelEvent] = []
        for entry in entries:
            message = _parse_message(entry, business_id)
            if message:
                events.append(message)
        return events

    logger.debug(f"Ignoring Evolution event {event}", extra={"business_id": str(business_id)})
    return []


def _parse_connection_update(
    payload: dict[str, Any],
    data: dict[str, Any],
    business_id: UUID,
) -> list[ChannelEvent]:
    """Map connection.update states onto lifecycle events."""
    state = (data.get("state") or "").lower()

    if state == "open":
        identity = jid_to_phone(data.get("wuid") or payload.get("sender")) or None
        return [Ready(business_id=business_id, identity=identity)]

    if state == "close":
        status_reason = data.get("statusReason")
        if status_reason == LOGGED_OUT_STATUS:
            return [AuthFailed(business_id=business_id, reason="logged_out")]
        return [Disconnected(business_id=business_id, reason=str(status_reason) if status_reason else None)]

    # "connecting" carries no transition
    return []


def _parse_message(entry: dict[str, Any], business_id: UUID) -> MessageReceived | None:
    """Parse a single messages.upsert entry."""
    key = entry.get("key") or {}
    remote_jid = key.get("remoteJid") or ""

    # Groups and status broadcasts are not customer conversations
    if remote_jid.endswith("@g.us") or remote_jid == "status@broadcast":
        return None

    message = entry.get("message") or {}
    text = (
        message.get("conversation")
        or (message.get("extendedTextMessage") or {}).get("text")
        or (message.get("imageMessage") or {}).get("caption")
        or (message.get("videoMessage") or {}).get("caption")
    )

    timestamp = datetime.now(timezone.utc)
    if entry.get("messageTimestamp"):
        try:
            timestamp = datetime.fromtimestamp(int(entry["messageTimestamp"]), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            logger.debug("Unparseable messageTimestamp", extra={"value": entry.get("messageTimestamp")})

    return MessageReceived(
        business_id=business_id,
        sender=jid_to_phone(remote_jid),
        text=text,
        is_self=bool(key.get("fromMe")),
        message_id=key.get("id"),
        contact_name=entry.get("pushName"),
        timestamp=timestamp,
        raw_payload=entry,
    )
