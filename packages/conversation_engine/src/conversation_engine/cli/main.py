"""
Conversation CLI

Command-line interface for conversation engine administration.

Commands:
- init-db: Create the engine's tables
- connect-merchant: Provision a merchant account and print its onboarding link
- enable-payments: Turn payment collection on (or off with --disable)
- payment-link: Create a checkout for an order, optionally sending it
- list-conversations: List conversations for a business
- list-orders: List orders for a business
- channel-status: Show recent channel status events for a business
"""

import asyncio
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from basecore.db import get_engine, get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client, read_latest
from basecore.settings import get_settings
from conversation_engine.bootstrap import ConversationEngine, build_engine
from conversation_engine.contracts.status_event import ChannelStatusEvent
from conversation_engine.errors import ConversationEngineError
from conversation_engine.persistence import init_db as create_tables
from conversation_engine.persistence.models import OrderStatus
from conversation_engine.persistence.repo import ConversationRepository
from conversation_engine.streams.producer import status_stream_name

app = typer.Typer(
    name="conversation-cli",
    help="Conversation Engine CLI",
)

console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")):
    setup_logging(level="DEBUG" if verbose else "WARNING", json_output=False)


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def get_engine_instance() -> ConversationEngine:
    """Build an engine wired to the configured database (no status observers)."""
    return build_engine(get_settings(), get_sessionmaker())


def run_engine(operation):
    """Run an async operation against a fresh engine and close it afterwards."""
    engine = get_engine_instance()

    async def run():
        try:
            return await operation(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(run())
    except ConversationEngineError as e:
        rprint(f"[red]{e.message}[/red] ({e.code})")
        raise typer.Exit(1)


@app.command()
def init_db():
    """
    Create the conversation engine tables.

    Existing tables are left untouched.
    """
    create_tables(get_engine())
    rprint("[green]Tables created[/green]")


@app.command()
def connect_merchant(
    business_id: str = typer.Argument(..., help="Business UUID"),
):
    """
    Provision the business's merchant account and print its onboarding link.

    An existing account is reused; a fresh onboarding link is issued.
    """
    business_uuid = parse_uuid(business_id, "business ID")

    url = run_engine(lambda engine: engine.payments.create_merchant_account(business_uuid))

    rprint("[green]Onboarding link:[/green]")
    rprint(f"  {url}")


@app.command()
def enable_payments(
    business_id: str = typer.Argument(..., help="Business UUID"),
    disable: bool = typer.Option(False, "--disable", help="Turn payment collection off"),
):
    """
    Turn payment collection on or off for a business.
    """
    business_uuid = parse_uuid(business_id, "business ID")
    engine = get_engine_instance()

    try:
        enabled = engine.payments.set_payments_enabled(business_uuid, not disable)
    except ConversationEngineError as e:
        rprint(f"[red]{e.message}[/red] ({e.code})")
        raise typer.Exit(1)

    state = "[green]enabled[/green]" if enabled else "[yellow]disabled[/yellow]"
    rprint(f"Payments {state} for business {business_id}")


@app.command()
def payment_link(
    order_id: str = typer.Argument(..., help="Order UUID"),
    send_to: Optional[str] = typer.Option(None, "--send-to", help="Also send the link to this phone"),
):
    """
    Create a checkout for an order and print its link.

    With --send-to, the link is also sent to the customer over the channel
    (the business's channel session must be connected in this process).
    """
    order_uuid = parse_uuid(order_id, "order ID")

    if send_to is None:
        url = run_engine(lambda engine: engine.payments.create_payment_session(order_uuid))
        rprint("[green]Payment link:[/green]")
        rprint(f"  {url}")
        return

    with get_sessionmaker()() as db:
        order = ConversationRepository(db).get_order(order_uuid)
        if order is None:
            rprint(f"[red]Order not found: {order_id}[/red]")
            raise typer.Exit(1)
        business_uuid = order.business_id

    result = run_engine(
        lambda engine: engine.payments.deliver_payment_link(order_uuid, send_to, business_uuid)
    )

    rprint("[green]Payment link:[/green]")
    rprint(f"  {result['url']}")
    send_status = result["send"].get("status")
    color = "green" if send_status == "sent" else "yellow"
    rprint(f"  Send: [{color}]{send_status}[/{color}] {result['send'].get('error') or ''}")


@app.command()
def list_conversations(
    business_id: str = typer.Argument(..., help="Business UUID"),
    limit: int = typer.Option(20, help="Maximum number of conversations to show"),
):
    """
    List conversations for a business, most recent first.
    """
    business_uuid = parse_uuid(business_id, "business ID")

    with get_sessionmaker()() as db:
        conversations = ConversationRepository(db).list_conversations(business_uuid, limit=limit)

    if not conversations:
        rprint("[yellow]No conversations found[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Conversations for business {business_id[:8]}...")
    table.add_column("Customer", style="dim")
    table.add_column("Phone")
    table.add_column("Name")
    table.add_column("Last Message")
    table.add_column("At")

    for customer, message in conversations:
        arrow = "<-" if message.direction == "incoming" else "->"
        table.add_row(
            str(customer.id)[:8] + "...",
            customer.phone,
            customer.name or "-",
            f"{arrow} {message.content[:40]}",
            message.created_at.strftime("%Y-%m-%d %H:%M") if message.created_at else "-",
        )

    console.print(table)


@app.command()
def list_orders(
    business_id: str = typer.Argument(..., help="Business UUID"),
    status: Optional[str] = typer.Option(None, help="Filter by status (pending, confirmed, ...)"),
    limit: int = typer.Option(20, help="Maximum number of orders to show"),
):
    """
    List orders for a business, newest first.
    """
    business_uuid = parse_uuid(business_id, "business ID")

    status_filter = None
    if status:
        try:
            status_filter = OrderStatus(status)
        except ValueError:
            rprint(f"[red]Unknown status: {status}[/red]")
            raise typer.Exit(1)

    with get_sessionmaker()() as db:
        orders = ConversationRepository(db).list_orders(business_uuid, status=status_filter, limit=limit)

    if not orders:
        rprint("[yellow]No orders found[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Orders for business {business_id[:8]}...")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Items")
    table.add_column("Total", justify="right")
    table.add_column("Created")
    table.add_column("Paid")

    for order in orders:
        items = ", ".join(f"{item['quantity']}x {item['product']}" for item in order.items)
        table.add_row(
            str(order.id)[:8] + "...",
            order.status,
            items,
            f"{order.total_amount} {order.currency.upper()}",
            order.created_at.strftime("%Y-%m-%d %H:%M") if order.created_at else "-",
            order.paid_at.strftime("%Y-%m-%d %H:%M") if order.paid_at else "-",
        )

    console.print(table)


@app.command()
def channel_status(
    business_id: str = typer.Argument(..., help="Business UUID"),
    count: int = typer.Option(10, help="Number of events to show"),
):
    """
    Show the latest channel status events published for a business.
    """
    business_uuid = parse_uuid(business_id, "business ID")
    stream = status_stream_name(business_uuid)

    entries = read_latest(stream, count=count, client=get_redis_client())
    if not entries:
        rprint(f"[yellow]No status events on {stream}[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Channel status: {stream}")
    table.add_column("Entry", style="dim")
    table.add_column("Event")
    table.add_column("Occurred")
    table.add_column("Phone")
    table.add_column("Reason")

    for msg_id, data in entries:
        event = ChannelStatusEvent.from_stream_data(data)
        table.add_row(
            msg_id,
            event.event_type.value,
            event.occurred_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.phone_number or "-",
            event.reason or ("QR issued" if event.qr else "-"),
        )

    console.print(table)


if __name__ == "__main__":
    app()
