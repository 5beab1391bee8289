"""
Tests for the inbound message pipeline, order resolution and dispatch.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from conversation_engine.ai.schema import AssistantReply, Intent, OrderPayload, Parsed, Unavailable, Unparsed
from conversation_engine.contracts.events import MessageReceived, Paired, Ready
from conversation_engine.persistence.models import (
    AISettings,
    Customer,
    Message,
    Order,
    PaymentTransaction,
)
from conversation_engine.service.dispatcher import ChannelEventDispatcher
from conversation_engine.templates import TemplateName, render


def message_event(business_id, text="Hello", sender="971501234567", message_id="wamid_1", **kwargs):
    return MessageReceived(
        business_id=business_id,
        sender=sender,
        text=text,
        message_id=message_id,
        **kwargs,
    )


def reply(text, intent=Intent.QUESTION, order=None):
    return Parsed(reply=AssistantReply(reply=text, intent=intent, order=order))


def all_rows(session_factory, model):
    with session_factory() as db:
        return list(db.scalars(select(model)).all())


def messages_by_direction(session_factory, direction):
    return [m for m in all_rows(session_factory, Message) if m.direction == direction]


class TestIngest:
    """Tests for storing inbound messages and replying."""

    @pytest.mark.asyncio
    async def test_message_stored_and_answered(self, inbound, inference, connected, channel_client, session_factory):
        """One inbound message creates the customer, one incoming row and one AI reply."""
        inference.push(reply("We open at 9."))

        result = await inbound.ingest(connected, message_event(connected, contact_name="Layla"))

        assert result["status"] == "processed"
        assert result["reply"] == "sent"

        customers = all_rows(session_factory, Customer)
        assert len(customers) == 1
        assert customers[0].phone == "971501234567"
        assert customers[0].name == "Layla"

        incoming = messages_by_direction(session_factory, "incoming")
        assert len(incoming) == 1
        assert incoming[0].content == "Hello"
        assert incoming[0].status == "received"
        assert incoming[0].customer_id == customers[0].id

        outgoing = messages_by_direction(session_factory, "outgoing")
        assert len(outgoing) == 1
        assert outgoing[0].content == "We open at 9."
        assert outgoing[0].is_ai is True
        assert outgoing[0].status == "sent"

        assert channel_client.get_sent_messages()[0]["text"] == "We open at 9."

    @pytest.mark.asyncio
    async def test_duplicate_delivery_ignored(self, inbound, inference, connected, session_factory):
        """A redelivered provider message is stored once and answered once."""
        inference.push(reply("Hi!"))
        inference.push(reply("Hi again!"))

        await inbound.ingest(connected, message_event(connected))
        result = await inbound.ingest(connected, message_event(connected))

        assert result["status"] == "skipped"
        assert result["reason"] == "already_processed"
        assert len(messages_by_direction(session_factory, "incoming")) == 1
        assert len(inference.prompts) == 1

    @pytest.mark.asyncio
    async def test_self_sent_skipped(self, inbound, inference, connected, session_factory):
        """Messages the business sent from its own phone are not processed."""
        result = await inbound.ingest(connected, message_event(connected, is_self=True))

        assert result["status"] == "skipped"
        assert all_rows(session_factory, Message) == []
        assert inference.prompts == []

    @pytest.mark.asyncio
    async def test_message_without_text_stored_not_answered(
        self, inbound, inference, connected, channel_client, session_factory
    ):
        """A media message without caption is kept in the conversation but not answered."""
        result = await inbound.ingest(connected, message_event(connected, text=None, message_id="wamid_img"))

        assert result["reason"] == "no_text"
        incoming = messages_by_direction(session_factory, "incoming")
        assert len(incoming) == 1
        assert incoming[0].content == ""
        assert incoming[0].provider_message_id == "wamid_img"
        assert inference.prompts == []
        assert channel_client.get_sent_messages() == []

    @pytest.mark.asyncio
    async def test_assistant_disabled(self, inbound, inference, connected, channel_client, session_factory):
        """With the assistant off the message is stored but not answered."""
        with session_factory() as db:
            db.query(AISettings).update({"enabled": False})
            db.commit()

        result = await inbound.ingest(connected, message_event(connected))

        assert result["ai"] == "disabled"
        assert len(messages_by_direction(session_factory, "incoming")) == 1
        assert messages_by_direction(session_factory, "outgoing") == []
        assert inference.prompts == []
        assert channel_client.get_sent_messages() == []

    @pytest.mark.asyncio
    async def test_inference_unavailable_sends_apology(self, inbound, inference, connected, channel_client):
        """A timed-out model is answered with an apology in the business language."""
        inference.push(Unavailable(reason="timeout"))

        result = await inbound.ingest(connected, message_event(connected))

        assert result["intent"] == "question"
        assert result["outcome"] == "unavailable"
        assert channel_client.get_sent_messages()[0]["text"] == render(TemplateName.APOLOGY, "en")

    @pytest.mark.asyncio
    async def test_apology_bilingual_without_language(self, inbound, inference, connected, channel_client, session_factory):
        with session_factory() as db:
            db.query(AISettings).update({"language": None})
            db.commit()
        inference.push(Unavailable(reason="http_502"))

        await inbound.ingest(connected, message_event(connected))

        text = channel_client.get_sent_messages()[0]["text"]
        assert text == render(TemplateName.APOLOGY, "ar") + "\n" + render(TemplateName.APOLOGY, "en")

    @pytest.mark.asyncio
    async def test_unparsed_text_sent_as_reply(self, inbound, inference, connected, channel_client, session_factory):
        """Free text from the model is still sent, with no order."""
        inference.push(Unparsed(raw_text="We have cakes and cookies."))

        await inbound.ingest(connected, message_event(connected))

        assert channel_client.get_sent_messages()[0]["text"] == "We have cakes and cookies."
        assert all_rows(session_factory, Order) == []

    @pytest.mark.asyncio
    async def test_reply_recorded_as_failed_when_disconnected(self, inbound, inference, business, session_factory):
        """Without a connected session the reply is kept as failed."""
        inference.push(reply("Hi!"))

        result = await inbound.ingest(business, message_event(business))

        assert result["reply"] == "failed"
        outgoing = messages_by_direction(session_factory, "outgoing")
        assert len(outgoing) == 1
        assert outgoing[0].status == "failed"

    @pytest.mark.asyncio
    async def test_resolver_failure_falls_back_to_apology(
        self, inbound, inference, connected, channel_client, monkeypatch
    ):
        """If acting on the reply fails, the customer still gets the apology."""
        inference.push(reply("We open at 9."))
        resolve = inbound.resolver.resolve
        outcomes = []

        async def resolve_failing_once(**kwargs):
            outcomes.append(kwargs["outcome"])
            if len(outcomes) == 1:
                raise SQLAlchemyError("database is locked")
            return await resolve(**kwargs)

        monkeypatch.setattr(inbound.resolver, "resolve", resolve_failing_once)

        result = await inbound.ingest(connected, message_event(connected))

        assert isinstance(outcomes[1], Unavailable)
        assert result["outcome"] == "unavailable"
        assert [m["text"] for m in channel_client.get_sent_messages()] == [render(TemplateName.APOLOGY, "en")]

    @pytest.mark.asyncio
    async def test_inference_error_falls_back_to_apology(self, inbound, connected, channel_client, session_factory):
        """An unexpected inference error is answered with the apology."""

        class BrokenInference:
            async def complete(self, prompt):
                raise AttributeError("'list' object has no attribute 'get'")

        inbound.inference = BrokenInference()

        result = await inbound.ingest(connected, message_event(connected))

        assert result["status"] == "processed"
        assert result["intent"] == "question"
        assert channel_client.get_sent_messages()[0]["text"] == render(TemplateName.APOLOGY, "en")
        assert len(messages_by_direction(session_factory, "incoming")) == 1

    @pytest.mark.asyncio
    async def test_failed_apology_reported_not_raised(
        self, inbound, inference, connected, session_factory, monkeypatch
    ):
        """When even the apology cannot be sent the failure is reported in the result."""
        inference.push(reply("Hi!"))

        async def broken_resolve(**kwargs):
            raise SQLAlchemyError("database is gone")

        monkeypatch.setattr(inbound.resolver, "resolve", broken_resolve)

        result = await inbound.ingest(connected, message_event(connected))

        assert result["status"] == "failed"
        assert "database is gone" in result["error"]
        assert len(messages_by_direction(session_factory, "incoming")) == 1


class TestOrders:
    """Tests for orders created from assistant replies."""

    @pytest.mark.asyncio
    async def test_order_with_payment_link(
        self, inbound, inference, connected, catalog, payments_enabled, payment_gateway, channel_client, session_factory
    ):
        """An order intent creates a pending order and sends a payment link."""
        inference.push(reply(
            "Great, 2 cakes to Marina!",
            Intent.ORDER,
            OrderPayload(product="cake", quantity=2, address="Dubai Marina"),
        ))

        result = await inbound.ingest(connected, message_event(connected, text="2 cakes to Dubai Marina please"))

        assert result["payment"] == "link_sent"

        orders = all_rows(session_factory, Order)
        assert len(orders) == 1
        order = orders[0]
        assert order.status == "pending"
        assert order.items == [{"product": "cake", "quantity": 2, "unit_price": "50.00"}]
        assert Decimal(order.total_amount) == Decimal("100.00")
        assert order.delivery_address == "Dubai Marina"
        assert order.contact_phone == "971501234567"

        transactions = all_rows(session_factory, PaymentTransaction)
        assert len(transactions) == 1
        assert transactions[0].status == "pending"
        assert transactions[0].external_session_id == payment_gateway.sessions[0]["id"]
        assert payment_gateway.sessions[0]["account_id"] == payments_enabled

        sent = [m["text"] for m in channel_client.get_sent_messages()]
        assert sent[0] == "Great, 2 cakes to Marina!"
        assert payment_gateway.sessions[0]["url"] in sent[1]

    @pytest.mark.asyncio
    async def test_order_without_payments_stays_pending(
        self, inbound, inference, connected, payment_gateway, channel_client, session_factory
    ):
        """Without payment collection the order is created and nothing else is sent."""
        inference.push(reply("Noted!", Intent.ORDER, OrderPayload(product="Cookies", quantity=3)))

        result = await inbound.ingest(connected, message_event(connected))

        assert result["payment"] == "disabled"
        order = all_rows(session_factory, Order)[0]
        assert order.status == "pending"
        # Unknown product: default unit price
        assert Decimal(order.total_amount) == Decimal("300")
        assert payment_gateway.sessions == []
        assert len(channel_client.get_sent_messages()) == 1

    @pytest.mark.asyncio
    async def test_order_payload_phone_used_as_contact(self, inbound, inference, connected, session_factory):
        inference.push(reply("OK", Intent.ORDER, OrderPayload(product="Cake", quantity=1, phone="971509999999")))

        await inbound.ingest(connected, message_event(connected))

        assert all_rows(session_factory, Order)[0].contact_phone == "971509999999"

    @pytest.mark.asyncio
    async def test_order_intent_without_payload_creates_nothing(self, inbound, inference, connected, session_factory):
        inference.push(reply("Which product would you like?", Intent.ORDER))

        await inbound.ingest(connected, message_event(connected))

        assert all_rows(session_factory, Order) == []

    @pytest.mark.asyncio
    async def test_payment_failure_contained(
        self, inbound, inference, connected, payments_enabled, payment_gateway, session_factory
    ):
        """A gateway failure leaves the order pending and the pipeline healthy."""
        payment_gateway.fail_calls = True
        inference.push(reply("OK", Intent.ORDER, OrderPayload(product="Cake", quantity=1)))

        result = await inbound.ingest(connected, message_event(connected))

        assert result["status"] == "processed"
        assert result["payment"] == "disabled"
        assert all_rows(session_factory, Order)[0].status == "pending"
        assert all_rows(session_factory, PaymentTransaction) == []


class SlowInference:
    """Answers after a delay, echoing the message it answered."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.prompts = []

    async def complete(self, prompt):
        self.prompts.append(prompt)
        await asyncio.sleep(self.delay)
        return reply(f"re: {prompt.user_message}")


class TestDispatcher:
    """Tests for channel event dispatch."""

    @pytest.mark.asyncio
    async def test_same_customer_processed_in_order(self, inbound, registry, connected, channel_client):
        """Messages of one customer are answered one at a time, in arrival order."""
        inbound.inference = SlowInference()
        dispatcher = ChannelEventDispatcher(registry, inbound)
        dispatcher.start()

        for n in range(3):
            await dispatcher.put(message_event(connected, text=f"m{n}", message_id=f"wamid_{n}"))
        await dispatcher.drain()
        await dispatcher.stop()

        prompts = inbound.inference.prompts
        assert [p.user_message for p in prompts] == ["m0", "m1", "m2"]
        # Each answer is in the history of the next message
        assert {"role": "assistant", "content": "re: m0"} in prompts[1].history
        assert {"role": "assistant", "content": "re: m1"} in prompts[2].history
        assert [m["text"] for m in channel_client.get_sent_messages()] == ["re: m0", "re: m1", "re: m2"]

    @pytest.mark.asyncio
    async def test_lifecycle_events_reach_registry(self, inbound, registry, business):
        dispatcher = ChannelEventDispatcher(registry, inbound)
        dispatcher.start()

        await dispatcher.put(Paired(business_id=business, qr="qr-1"))
        await dispatcher.put(Ready(business_id=business, identity="971500000000"))
        await dispatcher.drain()
        await dispatcher.stop()

        assert registry.get_active_session(business).is_connected

    @pytest.mark.asyncio
    async def test_put_nowait_when_full(self, inbound, registry, business):
        """A full queue rejects events instead of blocking."""
        dispatcher = ChannelEventDispatcher(registry, inbound, maxsize=1)

        assert dispatcher.put_nowait(Paired(business_id=business, qr="a")) is True
        assert dispatcher.put_nowait(Paired(business_id=business, qr="b")) is False
