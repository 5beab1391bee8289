"""
Tests for Evolution API provider.
"""

import json
from uuid import UUID

import httpx
import pytest

from conversation_engine.contracts.events import (
    AuthFailed,
    Disconnected,
    MessageReceived,
    Paired,
    Ready,
)
from conversation_engine.providers.evolution import EvolutionChannelClient
from conversation_engine.providers.evolution.webhook import (
    extract_instance_name,
    jid_to_phone,
    parse_evolution_event,
    validate_api_key,
)

BUSINESS_ID = UUID("12345678-1234-1234-1234-123456789012")
INSTANCE = f"biz-{BUSINESS_ID}"


@pytest.fixture
def evolution_text_message_webhook():
    """Sample Evolution API webhook for a text message."""
    return {
        "event": "messages.upsert",
        "instance": INSTANCE,
        "data": {
            "key": {
                "id": "msg_123",
                "remoteJid": "971501234567@s.whatsapp.net",
                "fromMe": False,
            },
            "pushName": "Layla",
            "message": {
                "conversation": "Do you have chocolate cake?",
            },
            "messageType": "conversation",
            "messageTimestamp": 1704067200,
        },
    }


@pytest.fixture
def evolution_connection_webhook():
    """Sample Evolution API connection.update webhook."""
    def build(state, status_reason=None):
        data = {"instance": INSTANCE, "state": state, "wuid": "971500000000@s.whatsapp.net"}
        if status_reason is not None:
            data["statusReason"] = status_reason
        return {"event": "connection.update", "instance": INSTANCE, "data": data}
    return build


class TestEvolutionWebhookParsing:
    """Tests for Evolution API webhook parsing utilities."""

    def test_extract_instance_name(self, evolution_text_message_webhook):
        """Test extracting instance name from webhook."""
        assert extract_instance_name(evolution_text_message_webhook) == INSTANCE

    def test_extract_instance_name_missing(self):
        """Test extracting from invalid payload."""
        assert extract_instance_name({}) is None

    def test_jid_to_phone(self):
        """Test stripping JID suffixes."""
        assert jid_to_phone("971501234567@s.whatsapp.net") == "971501234567"
        assert jid_to_phone("971500000000:12@s.whatsapp.net") == "971500000000"
        assert jid_to_phone(None) == ""

    def test_parse_text_message(self, evolution_text_message_webhook):
        """Test parsing an incoming text message."""
        events = parse_evolution_event(evolution_text_message_webhook, BUSINESS_ID)

        assert len(events) == 1
        message = events[0]
        assert isinstance(message, MessageReceived)
        assert message.sender == "971501234567"
        assert message.text == "Do you have chocolate cake?"
        assert message.message_id == "msg_123"
        assert message.contact_name == "Layla"
        assert message.is_self is False
        assert message.timestamp.year == 2024

    def test_parse_extended_text_and_self_sent(self, evolution_text_message_webhook):
        """Test extendedTextMessage text and fromMe flag."""
        data = evolution_text_message_webhook["data"]
        data["key"]["fromMe"] = True
        data["message"] = {"extendedTextMessage": {"text": "Sent from the phone"}}

        message = parse_evolution_event(evolution_text_message_webhook, BUSINESS_ID)[0]

        assert message.text == "Sent from the phone"
        assert message.is_self is True

    def test_group_messages_skipped(self, evolution_text_message_webhook):
        """Test that group chats produce no events."""
        evolution_text_message_webhook["data"]["key"]["remoteJid"] = "1203630@g.us"

        assert parse_evolution_event(evolution_text_message_webhook, BUSINESS_ID) == []

    def test_parse_message_list(self, evolution_text_message_webhook):
        """Test payloads carrying several messages."""
        entry = evolution_text_message_webhook["data"]
        second = json.loads(json.dumps(entry))
        second["key"]["id"] = "msg_124"
        evolution_text_message_webhook["data"] = [entry, second]

        events = parse_evolution_event(evolution_text_message_webhook, BUSINESS_ID)

        assert [e.message_id for e in events] == ["msg_123", "msg_124"]

    def test_parse_qrcode(self):
        """Test qrcode.updated becomes Paired."""
        payload = {
            "event": "qrcode.updated",
            "instance": INSTANCE,
            "data": {"qrcode": {"base64": "data:image/png;base64,AAA"}},
        }

        events = parse_evolution_event(payload, BUSINESS_ID)

        assert events == [Paired(business_id=BUSINESS_ID, qr="data:image/png;base64,AAA")]

    def test_parse_connection_open(self, evolution_connection_webhook):
        """Test connection open becomes Ready with the business phone."""
        events = parse_evolution_event(evolution_connection_webhook("open"), BUSINESS_ID)

        assert events == [Ready(business_id=BUSINESS_ID, identity="971500000000")]

    def test_parse_connection_logged_out(self, evolution_connection_webhook):
        """Test close with status 401 becomes AuthFailed."""
        events = parse_evolution_event(evolution_connection_webhook("close", 401), BUSINESS_ID)

        assert events == [AuthFailed(business_id=BUSINESS_ID, reason="logged_out")]

    def test_parse_connection_closed(self, evolution_connection_webhook):
        """Test other closes become Disconnected."""
        events = parse_evolution_event(evolution_connection_webhook("close", 428), BUSINESS_ID)

        assert events == [Disconnected(business_id=BUSINESS_ID, reason="428")]

    def test_parse_connection_connecting(self, evolution_connection_webhook):
        """Test that connecting carries no transition."""
        assert parse_evolution_event(evolution_connection_webhook("connecting"), BUSINESS_ID) == []

    def test_validate_api_key(self):
        """Test API key validation."""
        headers = {"apikey": "test-key"}
        assert validate_api_key(headers, "test-key") is True
        assert validate_api_key(headers, "wrong-key") is False

    def test_validate_api_key_bearer(self):
        """Test API key validation with Bearer token."""
        headers = {"Authorization": "Bearer test-key"}
        assert validate_api_key(headers, "test-key") is True
        assert validate_api_key(headers, "wrong-key") is False


class TestEvolutionChannelClient:
    """Tests for the Evolution API channel client."""

    def make_client(self, handler):
        return EvolutionChannelClient(
            api_url="https://evolution.example.com",
            api_key="test-key",
            transport=httpx.MockTransport(handler),
        )

    def test_instance_naming(self):
        """Test business <-> instance name mapping."""
        client = self.make_client(lambda request: httpx.Response(200, json={}))

        assert client.instance_name_for(BUSINESS_ID) == INSTANCE
        assert client.business_id_for(INSTANCE) == BUSINESS_ID
        assert client.business_id_for("other-instance") is None

    def test_parse_event_unknown_instance(self, evolution_text_message_webhook):
        """Test webhooks of foreign instances are ignored."""
        client = self.make_client(lambda request: httpx.Response(200, json={}))
        evolution_text_message_webhook["instance"] = "someone-else"

        assert client.parse_event(evolution_text_message_webhook) == []

    @pytest.mark.asyncio
    async def test_open_session_creates_instance(self):
        """Test creating an instance returns its QR code."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"instance": {"instanceName": INSTANCE}, "qrcode": {"base64": "QR1"}})

        client = self.make_client(handler)
        handle = await client.open_session(BUSINESS_ID)
        await client.close()

        assert handle.instance_name == INSTANCE
        assert handle.qr == "QR1"
        assert requests[0].url.path == "/instance/create"
        assert requests[0].headers["apikey"] == "test-key"
        assert json.loads(requests[0].content)["instanceName"] == INSTANCE

    @pytest.mark.asyncio
    async def test_open_session_reconnects_existing_instance(self):
        """Test an existing instance is asked for a fresh QR code."""
        def handler(request):
            if request.url.path == "/instance/create":
                return httpx.Response(403, json={"error": "instance name already in use"})
            return httpx.Response(200, json={"base64": "QR2"})

        client = self.make_client(handler)
        handle = await client.open_session(BUSINESS_ID)

        assert handle.qr == "QR2"

    @pytest.mark.asyncio
    async def test_send_text(self):
        """Test sending a text message."""
        def handler(request):
            assert request.url.path == f"/message/sendText/{INSTANCE}"
            body = json.loads(request.content)
            assert body == {"number": "971501234567", "text": "Hello"}
            return httpx.Response(201, json={"key": {"id": "wamid_1"}})

        client = self.make_client(handler)
        response = await client.send_text(INSTANCE, "971501234567", "Hello")

        assert response.success
        assert response.message_id == "wamid_1"

    @pytest.mark.asyncio
    async def test_send_text_failure(self):
        """Test a provider error becomes a failed response."""
        client = self.make_client(lambda request: httpx.Response(500, json={"message": "boom"}))

        response = await client.send_text(INSTANCE, "971501234567", "Hello")

        assert response.success is False
        assert response.error_code == "500"

    @pytest.mark.asyncio
    async def test_fetch_state_unknown_instance(self):
        """Test unknown instances have no state."""
        client = self.make_client(lambda request: httpx.Response(404, json={"error": "not found"}))

        assert await client.fetch_state(INSTANCE) is None
