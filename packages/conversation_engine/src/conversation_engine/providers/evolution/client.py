"""
Evolution API Channel Client

Provider for Evolution API (Baileys-based WhatsApp Web integration).
Uses REST API to pair sessions and send messages, and receives webhooks
for QR codes, connection changes and incoming messages.

Documentation: https://doc.evolution-api.com/
"""

import logging
from typing import Any
from uuid import UUID

import httpx

from conversation_engine.contracts.events import ChannelEvent
from conversation_engine.providers.base import (
    ChannelClient,
    ProviderError,
    ProviderResponse,
    SessionHandle,
)
from conversation_engine.providers.evolution.api import EvolutionAPI, pairing_code, sent_message_id
from conversation_engine.providers.evolution.webhook import (
    extract_instance_name,
    parse_evolution_event,
)

logger = logging.getLogger(__name__)


class EvolutionChannelClient(ChannelClient):
    """
    Evolution API provider.

    One Evolution instance per business, named "{instance_prefix}{business_id}",
    so webhooks route back to their business without a lookup table.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        instance_prefix: str = "biz-",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Evolution API client.

        Args:
            api_url: Base URL of Evolution API (e.g., "https://evolution-api.example.com")
            api_key: Global API key for authentication
            instance_prefix: Prefix of instance names owned by this service
            timeout: HTTP request timeout
            transport: Optional httpx transport (tests)
        """
        self.instance_prefix = instance_prefix
        self.api = EvolutionAPI(
            api_url=api_url,
            api_key=api_key,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.api.close()

    def instance_name_for(self, business_id: UUID) -> str:
        return f"{self.instance_prefix}{business_id}"

    def business_id_for(self, instance_name: str) -> UUID | None:
        if not instance_name or not instance_name.startswith(self.instance_prefix):
            return None
        try:
            return UUID(instance_name[len(self.instance_prefix):])
        except ValueError:
            return None

    async def open_session(self, business_id: UUID) -> SessionHandle:
        """
        Create the business's instance, or reconnect it if it already exists.

        Evolution answers 403/409 when the instance name is taken; the
        instance is then asked for a fresh QR code instead.
        """
        instance_name = self.instance_name_for(business_id)

        try:
            response = await self.api.create(instance_name)
        except ProviderError as e:
            if e.code not in ("403", "409"):
                raise
            logger.info(
                "Evolution instance exists, reconnecting",
                extra={"instance": instance_name, "business_id": str(business_id)},
            )
            response = await self.api.request_pairing(instance_name)

        qr = pairing_code(response)

        logger.info(
            "Opened Evolution session",
            extra={"instance": instance_name, "has_qr": bool(qr)},
        )

        return SessionHandle(instance_name=instance_name, qr=qr, raw_response=response)

    async def close_session(self, instance_name: str) -> bool:
        return await self.api.logout(instance_name)

    async def fetch_state(self, instance_name: str) -> str | None:
        return await self.api.state(instance_name)

    async def send_text(
        self,
        instance_name: str,
        to: str,
        text: str,
    ) -> ProviderResponse:
        """Send a text; provider errors come back as a failed response."""
        try:
            response = await self.api.send_text(instance_name, to, text)
        except ProviderError as e:
            logger.error(f"Evolution send failed: {e}", extra={"instance": instance_name, "to": to})
            return ProviderResponse(
                success=False,
                error_code=e.code,
                error_message=str(e),
                raw_response=e.details,
            )

        message_id = sent_message_id(response)
        logger.info(
            "Text sent via Evolution",
            extra={"to": to, "message_id": message_id, "instance": instance_name},
        )
        return ProviderResponse(success=True, message_id=message_id, raw_response=response)

    def parse_event(self, payload: dict[str, Any]) -> list[ChannelEvent]:
        """Parse an Evolution webhook; instances of other services are ignored."""
        instance_name = extract_instance_name(payload)
        business_id = self.business_id_for(instance_name or "")
        if business_id is None:
            logger.warning("Webhook for unknown instance", extra={"instance": instance_name})
            return []

        return parse_evolution_event(payload, business_id)
