"""CLI commands: transtunnel show / classify — dry runs that never touch the host."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from transtunnel.addresses import build_sets
from transtunnel.backends.ipset import render_sets
from transtunnel.backends.iptables import render_chain
from transtunnel.chain.compiler import compile_chain
from transtunnel.chain.evaluator import ChainEvaluator, Packet
from transtunnel.cli.options import exit_on_error, policy_options, resolve_policy
from transtunnel.config import TransTunnelConfig

console = Console(stderr=True)


@click.command()
@policy_options
@click.pass_context
def show(ctx: click.Context, **kwargs) -> None:
    """Print the ipset and iptables-restore payloads apply would load."""
    with exit_on_error():
        config = TransTunnelConfig.load()
        policy = resolve_policy(ctx, **kwargs)
        sets = build_sets(policy)
        chain = compile_chain(policy, fwmark=config.fwmark)

    click.echo("# ipset restore -exist")
    click.echo(render_sets(sets.values()), nl=False)
    click.echo("# iptables-restore --noflush")
    click.echo(render_chain(chain, policy.interfaces), nl=False)


@click.command()
@click.argument("src")
@click.argument("dst")
@click.option("--packet-mark", type=int, default=0, help="Mark the packet already carries.")
@click.option("--local", is_flag=True, help="Treat the packet as generated by this host.")
@click.option(
    "--no-extra-match",
    is_flag=True,
    help="Treat the packet as not matching the --extra expression.",
)
@policy_options
@click.pass_context
def classify(
    ctx: click.Context,
    src: str,
    dst: str,
    packet_mark: int,
    local: bool,
    no_extra_match: bool,
    **kwargs,
) -> None:
    """Simulate how a packet from SRC to DST would be classified."""
    with exit_on_error():
        config = TransTunnelConfig.load()
        policy = resolve_policy(ctx, **kwargs)
        sets = build_sets(policy)
        chain = compile_chain(policy, fwmark=config.fwmark)

    evaluator = ChainEvaluator(chain, sets)
    packet = Packet(src=src, dst=dst, mark=packet_mark, extra_matches=not no_extra_match)
    verdict = evaluator.evaluate(packet, local=local)

    if verdict.proxied:
        console.print(f"[bold]{src} -> {dst}[/bold]: [red]PROXY[/red] (mark {verdict.mark})")
    else:
        console.print(f"[bold]{src} -> {dst}[/bold]: [green]DIRECT[/green]")

    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("Chain", style="dim")
    table.add_column("Rule")
    table.add_column("Action")
    for name, index in verdict.trail:
        rule = chain.rules(name)[index]
        table.add_row(name.chain_name, str(index + 1), type(rule.action).__name__)
    console.print(table)
