"""CLI commands: transtunnel apply / flush — install or tear down the classification."""

from __future__ import annotations

import click
from rich.console import Console

from transtunnel import host
from transtunnel.addresses import build_sets
from transtunnel.cli.options import exit_on_error, policy_options, resolve_policy
from transtunnel.config import TransTunnelConfig
from transtunnel.lifecycle import LifecycleManager

console = Console(stderr=True)


@click.command()
@policy_options
@click.option(
    "--flush-only",
    "-f",
    is_flag=True,
    help="Only remove previously installed rules, routes and sets.",
)
@click.pass_context
def apply(ctx: click.Context, flush_only: bool, **kwargs) -> None:
    """Flush, then install address sets, routes and the decision chain."""
    with exit_on_error():
        config = TransTunnelConfig.load()
        policy = resolve_policy(ctx, flush_only=flush_only, **kwargs)
        manager = LifecycleManager.for_host(config)

        if policy.flush_only:
            manager.check_environment(install=False)
            manager.flush()
            console.print("[bold]TransTunnel[/bold] flushed")
            return

        manager.check_environment(install=True)
        self_address = host.discover_self_address(config.anchor)
        sets = build_sets(policy, self_address=self_address)
        chain = manager.install(policy, sets)

    console.print(
        f"[bold]TransTunnel[/bold] active: [cyan]{len(chain.chains())}[/cyan] chains, "
        f"marked traffic -> [cyan]{policy.tunnel}[/cyan]"
    )


@click.command()
@click.pass_context
def flush(ctx: click.Context) -> None:
    """Remove every rule, route and set transtunnel installed."""
    ctx.invoke(apply, flush_only=True)
