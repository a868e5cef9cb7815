"""CLI: storefront checkout run|status|retry, storefront coupon check"""

import json
from decimal import Decimal
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from storefront_checkout.errors import CheckoutError
from storefront_checkout.models.order import CheckoutRequest, CheckoutSession, ProgressState
from storefront_checkout.rails.base import WatchOnlyWallet

console = Console()

STATE_STYLES = {
    ProgressState.SUCCESS: "green",
    ProgressState.ERROR: "red",
}


def _get_client(**kwargs):
    from storefront_checkout.cli.main import _get_client
    return _get_client(**kwargs)


def _run(coro):
    from storefront_checkout.cli.main import _run
    return _run(coro)


def _load_session(path: Path) -> CheckoutSession:
    try:
        return CheckoutSession.model_validate_json(path.read_text())
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read session file {path}: {e}[/red]")
        raise SystemExit(1)


def _save_session(session: CheckoutSession, path: Path) -> None:
    path.write_text(session.model_dump_json(indent=2))


def _print_session(session: CheckoutSession) -> None:
    progress = session.progress
    style = STATE_STYLES.get(progress.state, "yellow")
    table = Table(title=f"Checkout {session.session_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("State", f"[{style}]{progress.state.value}[/{style}]")
    table.add_row("Attempt", str(session.attempt))
    order = session.batch_order
    if order is not None:
        table.add_row("Batch order", order.batch_order_id)
        table.add_row("Order number", order.order_number or "-")
        table.add_row("Total", f"{order.total_payment_amount} USD")
        table.add_row("Ledger status", order.status.value)
    if session.discount is not None and session.discount.code:
        table.add_row("Coupon", f"{session.discount.code} (-{session.discount.discount})")
    if session.submission is not None:
        table.add_row("Payment", f"{session.submission.amount} {session.submission.asset} via {session.submission.rail}")
        table.add_row("Reference", session.submission.reference)
    if progress.message:
        table.add_row("Message", progress.message)
    if progress.state == ProgressState.ERROR:
        table.add_row("Error", f"{progress.error_code}: {progress.reason}")
        table.add_row("Retry", "yes" if progress.recoverable else "no")
    console.print(table)


@click.group()
def coupon():
    """Coupons."""


@coupon.command("check")
@click.argument("code")
@click.option("--total", required=True, type=str, help="Cart total in USD.")
@click.option("--wallet", required=True, help="Buyer wallet address.")
@click.option("--collection", "collections", multiple=True, help="Collection id of a cart item (repeatable).")
def coupon_check(code, total, wallet, collections):
    """Price a cart total with a coupon code."""

    async def _check():
        client = _get_client()
        try:
            result = await client.check_coupon(code, Decimal(total), wallet, list(collections))
        except CheckoutError as e:
            console.print(f"[red]{e.user_message}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()
        console.print(
            f"[green]{result.code}[/green]: {result.pre_discount_total} - {result.discount} = "
            f"[bold]{result.final_price}[/bold]" + (" [cyan](free order)[/cyan]" if result.is_free else "")
        )

    _run(_check())


@click.group()
def checkout():
    """Run and manage checkout sessions."""


@checkout.command("run")
@click.argument("cart_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wallet", default=None, help="Watch-only wallet address for on-chain rails.")
@click.option("--save", "save_path", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help="Where to store the session (default: <session-id>.json).")
def checkout_run(cart_file, wallet, save_path):
    """Run a checkout for the request in CART_FILE."""
    try:
        request = CheckoutRequest.model_validate(json.loads(cart_file.read_text()))
    except ValueError as e:
        console.print(f"[red]Invalid checkout request: {e}[/red]")
        raise SystemExit(1)

    async def _checkout():
        client = _get_client(wallet=WatchOnlyWallet(wallet) if wallet else None)
        try:
            with console.status("Running checkout..."):
                return await client.start_checkout(
                    request.cart,
                    request.shipping,
                    request.payment_method,
                    coupon_code=request.coupon_code,
                    wallet_address=wallet or request.wallet_address,
                )
        except CheckoutError as e:
            console.print(f"[red]{e.user_message}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    session = _run(_checkout())
    target = save_path or Path(f"{session.session_id}.json")
    _save_session(session, target)
    _print_session(session)
    console.print(f"[dim]Session saved to {target}[/dim]")
    if session.state != ProgressState.SUCCESS:
        raise SystemExit(2)


@checkout.command("status")
@click.argument("session_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--refresh", is_flag=True, help="Fetch the batch order's current ledger status.")
def checkout_status(session_file, refresh):
    """Show a saved checkout session."""
    session = _load_session(session_file)
    if refresh and session.batch_order is not None:

        async def _refresh():
            client = _get_client()
            try:
                return await client.get_order(session.batch_order.batch_order_id)
            finally:
                await client.close()

        order = _run(_refresh())
        if order is not None:
            session.progress.batch_order = order
    _print_session(session)


@checkout.command("retry")
@click.argument("session_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wallet", default=None, help="Watch-only wallet address for on-chain rails.")
def checkout_retry(session_file, wallet):
    """Retry a failed checkout, reusing its batch order when one exists."""
    session = _load_session(session_file)

    async def _retry():
        client = _get_client(wallet=WatchOnlyWallet(wallet) if wallet else None)
        try:
            with console.status("Retrying checkout..."):
                return await client.resume_checkout(session)
        except CheckoutError as e:
            console.print(f"[red]{e.user_message}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    session = _run(_retry())
    _save_session(session, session_file)
    _print_session(session)
    if session.state != ProgressState.SUCCESS:
        raise SystemExit(2)
