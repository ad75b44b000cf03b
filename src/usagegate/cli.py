"""
Usage gate CLI.
Administrative commands run directly against the configured store.
"""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from usagegate.config import Settings, get_settings
from usagegate.errors import UsageGateError
from usagegate.quota import load_policy
from usagegate.services import Services, build_services

console = Console()


def _run(settings: Settings, command: Callable[[Services], Awaitable[Any]]) -> Any:
    """Build services, run one command against them and shut them down."""

    async def runner() -> Any:
        services = build_services(settings)
        await services.start()
        try:
            return await command(services)
        finally:
            await services.close()

    try:
        return asyncio.run(runner())
    except UsageGateError as e:
        console.print(f"❌ [red]Error: {e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level: str | None):
    """Usage gate - analysis cache, quota and rate-limit administration."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, (log_level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command("check-config")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def check_config(ctx, as_json: bool):
    """Validate the quota and rate-limit policy."""
    settings: Settings = ctx.obj["settings"]
    try:
        policy = load_policy(settings.quota_config_path)
    except UsageGateError as e:
        console.print(f"❌ [red]Invalid policy: {e}[/red]")
        sys.exit(1)

    if as_json:
        console.print(json.dumps(policy.to_dict(), indent=2))
        return

    quotas = policy.quotas
    table = Table(title=f"Quota Limits (default tier: {quotas.default_tier})")
    table.add_column("Tier", style="cyan")
    table.add_column("Action")
    table.add_column("Period")
    table.add_column("Limit", justify="right")

    for tier, actions in quotas.tiers.items():
        for action, periods in quotas.action_periods.items():
            for period in periods:
                limit = actions[action][period]
                table.add_row(
                    tier,
                    action,
                    period.value,
                    "[green]unlimited[/green]" if limit == -1 else str(limit),
                )

    console.print(table)
    console.print("✅ [green]Policy is valid[/green]")


@cli.command()
@click.argument("user_id")
@click.option("--tier", "-t", default="free", help="Subscription tier")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, user_id: str, tier: str, as_json: bool):
    """Show a user's remaining quota for every action."""
    decisions = _run(ctx.obj["settings"], lambda s: s.ledger.status(user_id, tier))

    if as_json:
        console.print(json.dumps([d.to_dict() for d in decisions], indent=2))
        return

    table = Table(title=f"Quota for {user_id} ({tier})")
    table.add_column("Action", style="cyan")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets")

    for d in decisions:
        if d.unlimited:
            table.add_row(d.action, "-", "-", "[green]unlimited[/green]", "-")
            continue
        color = "green" if d.allowed else "red"
        table.add_row(
            d.action,
            d.limit_type.value if d.limit_type else "-",
            f"{d.used}/{d.limit}",
            f"[{color}]{d.remaining}[/{color}]",
            d.reset_at.strftime("%Y-%m-%d %H:%M UTC") if d.reset_at else "-",
        )

    console.print(table)
    if any(d.degraded for d in decisions):
        console.print("⚠️ [yellow]Store unavailable, figures are not live[/yellow]")


@cli.command()
@click.argument("user_id")
@click.argument("action")
@click.pass_context
def reset(ctx, user_id: str, action: str):
    """Clear a user's current quota counters for an action."""
    removed = _run(ctx.obj["settings"], lambda s: s.ledger.reset_quota(user_id, action))
    console.print(f"✅ Reset {action} for {user_id} ({removed} counters removed)")


@cli.command()
@click.argument("user_id")
@click.argument("action")
@click.argument("amount", type=click.IntRange(min=1))
@click.pass_context
def bonus(ctx, user_id: str, action: str, amount: int):
    """Give a user back AMOUNT uses of an action this period."""
    used = _run(ctx.obj["settings"], lambda s: s.ledger.add_bonus(user_id, action, amount))
    if used is None:
        console.print("❌ [red]Bonus could not be applied[/red]")
        sys.exit(1)
    console.print(f"✅ Granted {amount} {action} to {user_id} (now used: {used})")


@cli.command()
@click.argument("prefix")
@click.pass_context
def invalidate(ctx, prefix: str):
    """Delete cached analyses whose key starts with PREFIX."""
    deleted = _run(ctx.obj["settings"], lambda s: s.cache.invalidate(prefix))
    console.print(f"✅ Removed {deleted} cache keys under {prefix}")


@cli.command()
@click.pass_context
def health(ctx):
    """Check store connectivity."""
    info = _run(ctx.obj["settings"], lambda s: s.store.health_check())
    if info.get("connected"):
        console.print(f"✅ [green]{info['backend']} store is healthy[/green]")
        console.print(f"   Keys: {info.get('total_keys', 'unknown')}")
    else:
        console.print(f"❌ [red]{info['backend']} store unreachable: {info.get('error', '')}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to API_HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to API_PORT)")
@click.pass_context
def serve(ctx, host: str | None, port: int | None):
    """Run the admin API server."""
    import uvicorn

    from usagegate.api import create_app

    settings: Settings = ctx.obj["settings"]
    uvicorn.run(
        create_app(settings),
        host=host or settings.api_host,
        port=port or settings.api_port,
    )


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
