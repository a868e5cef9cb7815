"""
Storefront checkout CLI — `storefront` command.

Commands:
  storefront config show|set      Inspect or update ~/.storefront/config.json
  storefront coupon check CODE    Price a cart total with a coupon
  storefront checkout <cmd>       Run, inspect or retry a checkout session
  storefront orders <cmd>         Ledger lookups and background reconciliation
"""

import asyncio
import json
import logging

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install storefront-checkout[cli]")

from storefront_checkout.client import AsyncCheckout
from storefront_checkout.config import CONFIG_FILE, CheckoutConfig, load_config, save_config

console = Console()


def _get_client(**kwargs) -> AsyncCheckout:
    return AsyncCheckout(config=load_config(), **kwargs)


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log checkout stages to stderr.")
def main(verbose):
    """Storefront checkout — orders, payments and settlement from the terminal."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.group()
def config():
    """Checkout configuration."""


@config.command("show")
def config_show():
    """Print the effective configuration."""
    cfg = load_config()
    data = json.loads(cfg.model_dump_json())
    if data.get("access_token"):
        data["access_token"] = data["access_token"][:6] + "..."
    console.print_json(json.dumps(data))
    console.print(f"[dim]{CONFIG_FILE}[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key, value):
    """Set a top-level configuration KEY to VALUE."""
    if key not in CheckoutConfig.model_fields or key == "rail_timings":
        console.print(f"[red]Unknown setting: {key}[/red]")
        raise SystemExit(1)
    cfg = load_config(env={})
    try:
        updated = CheckoutConfig.model_validate({**cfg.model_dump(exclude_defaults=True), key: value})
    except ValueError as e:
        console.print(f"[red]Invalid value for {key}: {e}[/red]")
        raise SystemExit(1)
    save_config(updated)
    console.print(f"[green]{key} updated.[/green]")


# Register subcommands from separate modules
from storefront_checkout.cli.checkout import checkout, coupon
from storefront_checkout.cli.orders import orders

main.add_command(coupon)
main.add_command(checkout)
main.add_command(orders)


if __name__ == "__main__":
    main()
