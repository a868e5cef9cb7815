"""CLI: storefront orders get|reconcile"""

import json

import click
from rich.console import Console
from rich.table import Table

console = Console()


def _get_client():
    from storefront_checkout.cli.main import _get_client
    return _get_client()


def _run(coro):
    from storefront_checkout.cli.main import _run
    return _run(coro)


@click.group()
def orders():
    """Ledger batch orders."""


@orders.command("get")
@click.argument("batch_order_id")
@click.option("--json-output", "--json", is_flag=True)
def orders_get(batch_order_id, json_output):
    """Show one batch order."""

    async def _get():
        client = _get_client()
        try:
            return await client.get_order(batch_order_id)
        finally:
            await client.close()

    order = _run(_get())
    if order is None:
        console.print(f"[red]Batch order {batch_order_id} not found.[/red]")
        raise SystemExit(1)
    if json_output:
        click.echo(order.model_dump_json(indent=2))
        return
    table = Table(title=f"Batch order {order.order_number or order.batch_order_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("ID", order.batch_order_id)
    table.add_row("Status", order.status.value)
    table.add_row("Total", str(order.total_payment_amount))
    table.add_row("Items", str(len(order.order_ids)))
    table.add_row("Receiver", order.receiver_wallet or "-")
    table.add_row("Reference", order.transaction_ref or "-")
    console.print(table)


@orders.command("reconcile")
@click.option("--json-output", "--json", is_flag=True)
def orders_reconcile(json_output):
    """Verify every batch order still awaiting payment once."""

    async def _sweep():
        client = _get_client()
        try:
            with console.status("Reconciling pending orders..."):
                return await client.reconcile()
        finally:
            await client.close()

    report = _run(_sweep())
    if json_output:
        click.echo(json.dumps(report.__dict__, indent=2))
        return
    console.print(
        f"Checked {report.checked}: [green]{report.confirmed} confirmed[/green], "
        f"[red]{report.failed} failed[/red], [yellow]{report.pending} pending[/yellow]"
    )
    for batch_order_id in report.errors:
        console.print(f"[red]  error reconciling {batch_order_id}[/red]")
