"""
Tests for the channel session registry.
"""

import asyncio
from uuid import uuid4

import pytest
import redis

from conversation_engine.contracts.events import AuthFailed, Disconnected, Paired, Ready
from conversation_engine.contracts.status_event import ChannelStatusEvent
from conversation_engine.errors import ChannelNotConnected
from conversation_engine.persistence.models import ChannelConnection, ConnectionStatus
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.providers.stub import StubChannelClient
from conversation_engine.sessions.registry import ChannelSessionRegistry
from conversation_engine.streams.producer import ChannelStatusProducer, status_stream_name


class RecordingRedis:
    """Captures XADD calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: list[tuple[str, dict[str, str]]] = []

    def xadd(self, name, fields, maxlen=None, approximate=True):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.entries.append((name, fields))
        return f"{len(self.entries)}-0"


def persisted_status(session_factory, business_id) -> ChannelConnection | None:
    with session_factory() as db:
        return ConversationRepository(db).get_connection(business_id)


class TestConnect:
    """Tests for opening sessions."""

    @pytest.mark.asyncio
    async def test_connect_enters_pairing(self, registry, business, session_factory):
        """A new session starts pairing with a QR code and is persisted."""
        session = await registry.connect(business)

        assert session.state == ConnectionStatus.PAIRING
        assert session.qr.startswith("stub-qr:")
        assert persisted_status(session_factory, business).status == "pairing"

    @pytest.mark.asyncio
    async def test_concurrent_connect_opens_once(self, session_factory, business):
        """Simultaneous connects for one business share a single session."""
        client = StubChannelClient(open_delay=0.02)
        registry = ChannelSessionRegistry(client, session_factory)

        sessions = await asyncio.gather(*(registry.connect(business) for _ in range(5)))

        assert len(client.opened_sessions) == 1
        assert all(s is sessions[0] for s in sessions)

    @pytest.mark.asyncio
    async def test_connect_returns_live_session(self, registry, connected, channel_client):
        """Connecting a connected business does not re-pair."""
        session = await registry.connect(connected)

        assert session.is_connected
        assert len(channel_client.opened_sessions) == 1

    @pytest.mark.asyncio
    async def test_different_businesses_are_independent(self, session_factory):
        """Each business gets its own session."""
        client = StubChannelClient(open_delay=0.01)
        registry = ChannelSessionRegistry(client, session_factory)
        first, second = uuid4(), uuid4()

        a, b = await asyncio.gather(registry.connect(first), registry.connect(second))

        assert a.business_id == first
        assert b.business_id == second
        assert len(client.opened_sessions) == 2


class TestLifecycleEvents:
    """Tests for handle_event transitions."""

    @pytest.mark.asyncio
    async def test_ready_connects_and_records_identity(self, registry, business, session_factory):
        """Ready marks the session connected with the business phone."""
        await registry.connect(business)
        session = await registry.handle_event(Ready(business_id=business, identity="971500000000"))

        assert session.is_connected
        assert session.qr is None
        row = persisted_status(session_factory, business)
        assert row.status == "connected"
        assert row.phone_number == "971500000000"
        assert row.last_connected_at is not None

    @pytest.mark.asyncio
    async def test_paired_refreshes_qr(self, registry, business):
        """A new QR replaces the previous one."""
        await registry.connect(business)
        session = await registry.handle_event(Paired(business_id=business, qr="qr-2"))

        assert session.state == ConnectionStatus.PAIRING
        assert session.qr == "qr-2"

    @pytest.mark.asyncio
    async def test_disconnected_removes_session(self, registry, connected, session_factory):
        """Disconnected drops the session and persists the reason."""
        result = await registry.handle_event(Disconnected(business_id=connected, reason="428"))

        assert result is None
        assert registry.get_active_session(connected) is None
        row = persisted_status(session_factory, connected)
        assert row.status == "disconnected"
        assert row.status_reason == "428"

    @pytest.mark.asyncio
    async def test_auth_failed_is_terminal_until_reconnect(self, registry, connected, channel_client, session_factory):
        """AuthFailed removes the session; the next connect pairs again."""
        await registry.handle_event(AuthFailed(business_id=connected, reason="logged_out"))

        assert registry.get_active_session(connected) is None
        assert persisted_status(session_factory, connected).status == "auth_failed"

        session = await registry.connect(connected)
        assert session.state == ConnectionStatus.PAIRING
        assert len(channel_client.opened_sessions) == 2

    @pytest.mark.asyncio
    async def test_ready_without_session_adopts(self, registry, business):
        """Ready for a session opened before this process started is adopted."""
        session = await registry.handle_event(Ready(business_id=business, identity="971500000000"))

        assert session.is_connected
        assert session.instance_name == f"stub-{business}"


class TestDisconnect:
    """Tests for manual disconnect."""

    @pytest.mark.asyncio
    async def test_disconnect(self, registry, connected, channel_client, session_factory):
        """Disconnect logs out and persists the manual reason."""
        closed = await registry.disconnect(connected)

        assert closed is True
        assert channel_client.closed_sessions == [f"stub-{connected}"]
        assert registry.get_active_session(connected) is None
        row = persisted_status(session_factory, connected)
        assert row.status == "disconnected"
        assert row.status_reason == "manual"


class TestSend:
    """Tests for sending through the registry."""

    @pytest.mark.asyncio
    async def test_send_requires_connected_session(self, registry, business):
        """A pairing session cannot send."""
        await registry.connect(business)

        with pytest.raises(ChannelNotConnected):
            await registry.send(business, "971501234567", "hi")

    @pytest.mark.asyncio
    async def test_send_uses_business_session(self, registry, connected, channel_client):
        """Messages go out through the business's instance."""
        response = await registry.send(connected, "971501234567", "hi")

        assert response.success
        sent = channel_client.get_sent_messages()
        assert sent[0]["instance"] == f"stub-{connected}"
        assert sent[0]["to"] == "971501234567"

    @pytest.mark.asyncio
    async def test_send_waits_for_business_lock(self, registry, connected, channel_client):
        """A send issued during a session change sees the state the change leaves."""
        async with registry._locks.hold(connected):
            sending = asyncio.create_task(registry.send(connected, "971501234567", "hi"))
            await asyncio.sleep(0.01)
            assert not sending.done()
            registry._sessions.pop(connected)

        with pytest.raises(ChannelNotConnected):
            await sending
        assert channel_client.get_sent_messages() == []

    @pytest.mark.asyncio
    async def test_send_racing_disconnect(self, registry, connected, channel_client):
        """A send queued behind a disconnect is refused, not sent on the closed session."""
        results = await asyncio.gather(
            registry.disconnect(connected),
            registry.send(connected, "971501234567", "hi"),
            return_exceptions=True,
        )

        assert results[0] is True
        assert isinstance(results[1], ChannelNotConnected)
        assert channel_client.get_sent_messages() == []


class TestStatusAndRestore:
    """Tests for status reads and restart recovery."""

    @pytest.mark.asyncio
    async def test_status_without_any_session(self, registry, business):
        """Unknown businesses read as disconnected."""
        status = registry.status(business)

        assert status["status"] == "disconnected"
        assert status["qr"] is None

    @pytest.mark.asyncio
    async def test_stale_row_reads_disconnected(self, session_factory, business, connected):
        """A connected row without a live session in this process is stale."""
        fresh = ChannelSessionRegistry(StubChannelClient(), session_factory)

        status = fresh.status(business)

        assert status["status"] == "disconnected"
        assert status["phone_number"] == "971500000000"

    @pytest.mark.asyncio
    async def test_restore_open_sessions(self, session_factory, connected):
        """Connected rows whose provider session is still open are restored."""
        client = StubChannelClient()
        client.states[f"stub-{connected}"] = "open"
        fresh = ChannelSessionRegistry(client, session_factory)

        restored = await fresh.restore()

        assert restored == 1
        session = fresh.get_active_session(connected)
        assert session.is_connected
        assert session.phone_number == "971500000000"

    @pytest.mark.asyncio
    async def test_restore_marks_closed_sessions_disconnected(self, session_factory, connected):
        """Connected rows the provider no longer knows are marked disconnected."""
        fresh = ChannelSessionRegistry(StubChannelClient(), session_factory)

        restored = await fresh.restore()

        assert restored == 0
        assert fresh.get_active_session(connected) is None
        assert persisted_status(session_factory, connected).status == "disconnected"


class TestStatusObservers:
    """Tests for status events published to Redis."""

    @pytest.mark.asyncio
    async def test_transitions_published(self, channel_client, session_factory, business):
        """Pairing and connection are published on the business stream."""
        fake_redis = RecordingRedis()
        registry = ChannelSessionRegistry(channel_client, session_factory, ChannelStatusProducer(fake_redis))

        await registry.connect(business)
        await registry.handle_event(Ready(business_id=business, identity="971500000000"))

        streams = {name for name, _ in fake_redis.entries}
        assert streams == {status_stream_name(business)}
        event_types = [fields["event_type"] for _, fields in fake_redis.entries]
        assert event_types == ["channel.pairing", "channel.connected"]
        assert fake_redis.entries[0][1]["qr"].startswith("stub-qr:")

        connected = ChannelStatusEvent.from_stream_data(fake_redis.entries[1][1])
        assert connected.status == "connected"
        assert connected.phone_number == "971500000000"
        assert connected.qr is None
        assert connected.last_connected_at is not None

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_block_transitions(self, channel_client, session_factory, business):
        """Publishing failures are logged, the session still opens."""
        registry = ChannelSessionRegistry(
            channel_client,
            session_factory,
            ChannelStatusProducer(RecordingRedis(fail=True)),
        )

        session = await registry.connect(business)

        assert session.state == ConnectionStatus.PAIRING
