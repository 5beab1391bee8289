"""
Evolution API REST Calls

The handful of Evolution endpoints a channel session needs: create an
instance, ask it for a pairing code, read its state, log it out and send
text. Errors come back as ProviderError with the HTTP status as code.
"""

import logging
from typing import Any

import httpx

from conversation_engine.providers.base import ProviderError

logger = logging.getLogger(__name__)

BAILEYS = "WHATSAPP-BAILEYS"


def pairing_code(response: dict[str, Any]) -> str | None:
    """QR payload of a create/connect response (both shapes are in use)."""
    return (response.get("qrcode") or {}).get("base64") or response.get("base64")


def sent_message_id(response: dict[str, Any]) -> str | None:
    return (response.get("key") or {}).get("id") or response.get("id")


class EvolutionAPI:
    """Authenticated Evolution API calls over one pooled HTTP client."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
                headers={"apikey": self.api_key},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def call(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Call an endpoint and return its JSON body.

        Raises:
            ProviderError: transport failure (code HTTP_ERROR, retryable) or
                an error status (code = status, retryable for 5xx)
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=body)
        except httpx.RequestError as e:
            logger.error(f"Evolution API unreachable: {e}", extra={"path": path})
            raise ProviderError(f"Evolution API unreachable: {e}", code="HTTP_ERROR", retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            data = {"body": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.is_error:
            reason = data.get("error") or data.get("message") or response.reason_phrase
            raise ProviderError(
                str(reason),
                code=str(response.status_code),
                details=data,
                retryable=response.status_code >= 500,
            )
        return data

    # =========================================================================
    # Instances
    # =========================================================================

    async def create(self, instance_name: str) -> dict[str, Any]:
        """Create an instance with QR pairing enabled."""
        return await self.call(
            "POST",
            "/instance/create",
            {"instanceName": instance_name, "qrcode": True, "integration": BAILEYS},
        )

    async def request_pairing(self, instance_name: str) -> dict[str, Any]:
        """Ask an existing instance for a fresh QR code."""
        return await self.call("GET", f"/instance/connect/{instance_name}")

    async def state(self, instance_name: str) -> str | None:
        """
        Connection state: "open", "connecting" or "close".

        None when the instance is unknown or the API did not answer.
        """
        try:
            data = await self.call("GET", f"/instance/connectionState/{instance_name}")
        except ProviderError as e:
            logger.warning(f"Could not read instance state: {e}", extra={"instance": instance_name})
            return None
        return (data.get("instance") or {}).get("state") or data.get("state")

    async def logout(self, instance_name: str) -> bool:
        """Log the instance out of WhatsApp. False if Evolution refused."""
        try:
            await self.call("DELETE", f"/instance/logout/{instance_name}")
        except ProviderError as e:
            logger.error(f"Evolution logout failed: {e}", extra={"instance": instance_name})
            return False
        return True

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        return await self.call("POST", f"/message/sendText/{instance_name}", {"number": number, "text": text})
