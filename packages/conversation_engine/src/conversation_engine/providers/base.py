"""
Channel Provider Base

Abstract interface for messaging channel providers.
Implementations: Evolution API (WhatsApp Web pairing), Stub (for development).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from conversation_engine.contracts.events import ChannelEvent
from conversation_engine.errors import ConversationEngineError


class ProviderError(ConversationEngineError):
    """Error from a channel provider."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable


@dataclass
class SessionHandle:
    """
    Provider-side session opened for a business.

    qr is set when the provider already produced a pairing code.
    """

    instance_name: str
    qr: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    """
    Response from provider after sending a message.
    """

    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class ChannelClient(ABC):
    """
    Abstract interface for channel providers.

    Implementations must handle:
    - Opening and closing a provider session per business
    - Sending text messages through a session
    - Translating provider webhooks into typed channel events
    """

    @abstractmethod
    def instance_name_for(self, business_id: UUID) -> str:
        """Provider session name used for a business."""
        ...

    @abstractmethod
    def business_id_for(self, instance_name: str) -> UUID | None:
        """Business owning a provider session name, or None if foreign."""
        ...

    @abstractmethod
    async def open_session(self, business_id: UUID) -> SessionHandle:
        """
        Open (or reopen) the provider session of a business.

        Args:
            business_id: Business UUID

        Returns:
            SessionHandle, with the pairing code if already available
        """
        ...

    @abstractmethod
    async def close_session(self, instance_name: str) -> bool:
        """
        Log out a provider session.

        Args:
            instance_name: Provider session name

        Returns:
            True if successful
        """
        ...

    @abstractmethod
    async def fetch_state(self, instance_name: str) -> str | None:
        """
        Ask the provider for the session state.

        Returns:
            "open", "connecting", "close", or None if unknown
        """
        ...

    @abstractmethod
    async def send_text(
        self,
        instance_name: str,
        to: str,
        text: str,
    ) -> ProviderResponse:
        """
        Send a text message.

        Args:
            instance_name: Provider session name
            to: Recipient address (phone number)
            text: Message text

        Returns:
            ProviderResponse with message ID if successful
        """
        ...

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> list[ChannelEvent]:
        """
        Parse a provider webhook into channel events.

        Args:
            payload: Parsed JSON webhook payload

        Returns:
            Channel events (empty for payloads of no interest)
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        return None
