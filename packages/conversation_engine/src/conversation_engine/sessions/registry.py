"""
Channel Session Registry

Owns the live channel session of every business:
1. Opens sessions through the channel client (pairing)
2. Applies lifecycle events (paired, ready, disconnected, auth failed)
3. Mirrors state into channel_connections
4. Publishes transitions to observers
5. Routes outbound sends through the connected session

The session map is guarded per business id; businesses never wait on each other.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from conversation_engine.concurrency import KeyedLock
from conversation_engine.contracts.events import (
    AuthFailed,
    ChannelEvent,
    Disconnected,
    Paired,
    Ready,
)
from conversation_engine.contracts.status_event import ChannelStatusEvent, ChannelStatusEventType
from conversation_engine.errors import ChannelNotConnected
from conversation_engine.persistence.models import ConnectionStatus, utcnow
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.providers.base import ChannelClient, ProviderResponse
from conversation_engine.streams.producer import ChannelStatusProducer

logger = logging.getLogger(__name__)

_STATUS_EVENT_TYPES = {
    ConnectionStatus.PAIRING: ChannelStatusEventType.PAIRING,
    ConnectionStatus.CONNECTED: ChannelStatusEventType.CONNECTED,
    ConnectionStatus.DISCONNECTED: ChannelStatusEventType.DISCONNECTED,
    ConnectionStatus.AUTH_FAILED: ChannelStatusEventType.AUTH_FAILED,
}


@dataclass
class ChannelSession:
    """Live channel session of one business."""

    business_id: UUID
    instance_name: str
    state: ConnectionStatus = ConnectionStatus.PAIRING
    qr: str | None = None
    phone_number: str | None = None
    last_connected_at: datetime | None = None
    opened_at: datetime = field(default_factory=utcnow)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionStatus.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": str(self.business_id),
            "status": self.state.value,
            "qr": self.qr,
            "phone_number": self.phone_number,
            "last_connected_at": self.last_connected_at.isoformat() if self.last_connected_at else None,
        }


class ChannelSessionRegistry:
    """
    Keyed store of channel sessions.

    At most one session exists per business. `connect` while a session is
    pairing or connected returns that session instead of opening another.
    Terminal events (disconnected, auth failed) remove the session, so the
    next `connect` pairs from scratch.
    """

    def __init__(
        self,
        client: ChannelClient,
        session_factory: Callable[[], Session],
        status_producer: ChannelStatusProducer | None = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.status_producer = status_producer
        self._sessions: dict[UUID, ChannelSession] = {}
        self._locks = KeyedLock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, business_id: UUID) -> ChannelSession:
        """
        Open the business's session, or return the live one.

        Args:
            business_id: Business UUID

        Returns:
            The (single) session of the business
        """
        async with self._locks.hold(business_id):
            existing = self._sessions.get(business_id)
            if existing and existing.state in (ConnectionStatus.PAIRING, ConnectionStatus.CONNECTED):
                logger.debug(
                    "Session already open",
                    extra={"business_id": str(business_id), "status": existing.state.value},
                )
                return existing

            handle = await self.client.open_session(business_id)
            session = ChannelSession(
                business_id=business_id,
                instance_name=handle.instance_name,
                qr=handle.qr,
            )
            self._sessions[business_id] = session

            self._persist(session)
            self._publish(session)

            logger.info(
                "Channel session opened",
                extra={"business_id": str(business_id), "instance": handle.instance_name},
            )
            return session

    async def disconnect(self, business_id: UUID) -> bool:
        """
        Log out and drop the business's session.

        Returns:
            True if the provider confirmed the logout
        """
        async with self._locks.hold(business_id):
            session = self._sessions.pop(business_id, None)
            instance_name = session.instance_name if session else self.client.instance_name_for(business_id)

            closed = await self.client.close_session(instance_name)

            ended = session or ChannelSession(business_id=business_id, instance_name=instance_name)
            ended.state = ConnectionStatus.DISCONNECTED
            ended.qr = None
            self._persist(ended, reason="manual")
            self._publish(ended, reason="manual")

            logger.info(
                "Channel session disconnected",
                extra={"business_id": str(business_id), "provider_confirmed": closed},
            )
            return closed

    async def handle_event(self, event: ChannelEvent) -> ChannelSession | None:
        """
        Apply a lifecycle event to the business's session.

        Returns:
            The session after the transition (None once removed)
        """
        business_id = event.business_id

        async with self._locks.hold(business_id):
            session = self._sessions.get(business_id)

            if isinstance(event, Paired):
                session = session or self._adopt(business_id)
                session.state = ConnectionStatus.PAIRING
                session.qr = event.qr
                self._persist(session)
                self._publish(session)
                return session

            if isinstance(event, Ready):
                session = session or self._adopt(business_id)
                session.state = ConnectionStatus.CONNECTED
                session.qr = None
                session.phone_number = event.identity or session.phone_number
                session.last_connected_at = utcnow()
                self._persist(session)
                self._publish(session)
                logger.info(
                    "Channel connected",
                    extra={"business_id": str(business_id), "phone_number": session.phone_number},
                )
                return session

            if isinstance(event, (Disconnected, AuthFailed)):
                status = (
                    ConnectionStatus.AUTH_FAILED
                    if isinstance(event, AuthFailed)
                    else ConnectionStatus.DISCONNECTED
                )
                ended = self._sessions.pop(business_id, None) or self._adopt(business_id, register=False)
                ended.state = status
                ended.qr = None
                self._persist(ended, reason=event.reason)
                self._publish(ended, reason=event.reason)
                logger.warning(
                    f"Channel session ended: {status.value}",
                    extra={"business_id": str(business_id), "reason": event.reason},
                )
                return None

            logger.debug(f"Registry ignoring {type(event).__name__}")
            return session

    async def restore(self) -> int:
        """
        Rebuild sessions persisted as connected after a process restart.

        Only sessions the provider still reports as open are restored; the
        others are marked disconnected.

        Returns:
            Number of restored sessions
        """
        with self.session_factory() as db:
            rows = ConversationRepository(db).list_connections(ConnectionStatus.CONNECTED)
            candidates = [
                (row.business_id, row.instance_name, row.phone_number, row.last_connected_at)
                for row in rows
            ]

        restored = 0
        for business_id, instance_name, phone_number, last_connected_at in candidates:
            async with self._locks.hold(business_id):
                name = instance_name or self.client.instance_name_for(business_id)
                state = await self.client.fetch_state(name)
                session = ChannelSession(
                    business_id=business_id,
                    instance_name=name,
                    phone_number=phone_number,
                    last_connected_at=last_connected_at,
                )
                if state == "open":
                    session.state = ConnectionStatus.CONNECTED
                    self._sessions[business_id] = session
                    restored += 1
                else:
                    session.state = ConnectionStatus.DISCONNECTED
                    self._persist(session, reason="not_open_on_restore")

        logger.info(f"Restored {restored} channel sessions", extra={"candidates": len(candidates)})
        return restored

    # =========================================================================
    # Queries & sending
    # =========================================================================

    def get_active_session(self, business_id: UUID) -> ChannelSession | None:
        """Get the business's session if one is pairing or connected."""
        return self._sessions.get(business_id)

    def status(self, business_id: UUID) -> dict[str, Any]:
        """
        Current channel status, from memory or the persisted mirror.
        """
        session = self._sessions.get(business_id)
        if session:
            return session.to_dict()

        with self.session_factory() as db:
            connection = ConversationRepository(db).get_connection(business_id)
            if connection is None:
                return {
                    "business_id": str(business_id),
                    "status": ConnectionStatus.DISCONNECTED.value,
                    "qr": None,
                    "phone_number": None,
                    "last_connected_at": None,
                }
            # A row saying pairing/connected without a live session is stale
            status = connection.status
            if status in (ConnectionStatus.PAIRING.value, ConnectionStatus.CONNECTED.value):
                status = ConnectionStatus.DISCONNECTED.value
            return {
                "business_id": str(business_id),
                "status": status,
                "qr": None,
                "phone_number": connection.phone_number,
                "last_connected_at": (
                    connection.last_connected_at.isoformat() if connection.last_connected_at else None
                ),
            }

    async def send(self, business_id: UUID, to: str, text: str) -> ProviderResponse:
        """
        Send a text through the business's connected session.

        The session is looked up under the business lock, so a send issued
        while connect or disconnect is running sees the state they leave.
        The provider call itself runs outside the lock and does not hold up
        other conversations of the business.

        Raises:
            ChannelNotConnected: no connected session for the business
        """
        async with self._locks.hold(business_id):
            session = self._sessions.get(business_id)
            if session is None or not session.is_connected:
                raise ChannelNotConnected(business_id)
            instance_name = session.instance_name

        return await self.client.send_text(instance_name, to, text)

    # =========================================================================
    # Internals
    # =========================================================================

    def _adopt(self, business_id: UUID, register: bool = True) -> ChannelSession:
        """Session for a business whose provider session predates this process."""
        session = ChannelSession(
            business_id=business_id,
            instance_name=self.client.instance_name_for(business_id),
        )
        if register:
            self._sessions[business_id] = session
        return session

    def _persist(self, session: ChannelSession, reason: str | None = None) -> None:
        with self.session_factory() as db:
            ConversationRepository(db).upsert_connection(
                business_id=session.business_id,
                status=session.state,
                instance_name=session.instance_name,
                phone_number=session.phone_number,
                last_connected_at=session.last_connected_at,
                status_reason=reason,
            )
            db.commit()

    def _publish(self, session: ChannelSession, reason: str | None = None) -> None:
        if self.status_producer is None:
            return
        self.status_producer.publish(ChannelStatusEvent(
            event_type=_STATUS_EVENT_TYPES[session.state],
            business_id=session.business_id,
            status=session.state.value,
            qr=session.qr,
            phone_number=session.phone_number,
            reason=reason,
            last_connected_at=session.last_connected_at,
        ))
