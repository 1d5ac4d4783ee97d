"""Shared policy options and error-to-exit-status handling for CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import click
from rich.console import Console
from rich.markup import escape

from transtunnel.errors import TransTunnelError
from transtunnel.policy.loader import load_options, merge_options
from transtunnel.policy.models import Policy
from transtunnel.policy.resolver import Options, resolve

console = Console(stderr=True)

_LIST_HELP = "Comma/space separated IP-list files (repeatable)."


def policy_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach every policy option to a command."""
    decorators = [
        click.option("--tunnel", "-t", help="Tunnel interface marked packets are routed into."),
        click.option("--src-direct", multiple=True, help=f"Sources never proxied. {_LIST_HELP}"),
        click.option("--src-proxy", multiple=True, help=f"Sources always proxied. {_LIST_HELP}"),
        click.option(
            "--src-normal",
            multiple=True,
            help=f"Sources classified by destination. {_LIST_HELP}",
        ),
        click.option("--dst-direct", multiple=True, help=f"Destinations never proxied. {_LIST_HELP}"),
        click.option("--dst-proxy", multiple=True, help=f"Destinations always proxied. {_LIST_HELP}"),
        click.option(
            "--src-default",
            help="Treatment of unlisted sources: direct, proxy or normal (default: normal).",
        ),
        click.option(
            "--dst-default",
            help="Treatment of unlisted destinations: direct or proxy (default: proxy).",
        ),
        click.option("--self-proxy", is_flag=True, help="Also classify traffic this host originates."),
        click.option(
            "--server",
            "-s",
            "servers",
            multiple=True,
            help="Proxy server address(es); never routed into the tunnel.",
        ),
        click.option(
            "--interface",
            "-i",
            "interfaces",
            multiple=True,
            help="Inbound interface(s) to classify (default: all).",
        ),
        click.option("--extra", help="Extra iptables match appended to marking rules."),
        click.option(
            "--mark",
            "-m",
            help="Packets carrying this mark are never proxied (loopback avoidance).",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def build_options(ctx: click.Context, flush_only: bool = False, **kwargs: Any) -> Options:
    """Merge CLI values over the options file, if one was given."""
    cli = Options(
        tunnel=kwargs.get("tunnel"),
        src_direct=tuple(kwargs.get("src_direct") or ()),
        src_proxy=tuple(kwargs.get("src_proxy") or ()),
        src_normal=tuple(kwargs.get("src_normal") or ()),
        dst_direct=tuple(kwargs.get("dst_direct") or ()),
        dst_proxy=tuple(kwargs.get("dst_proxy") or ()),
        src_default=kwargs.get("src_default"),
        dst_default=kwargs.get("dst_default"),
        self_proxy=bool(kwargs.get("self_proxy")),
        servers=tuple(kwargs.get("servers") or ()),
        interfaces=tuple(kwargs.get("interfaces") or ()),
        extra=kwargs.get("extra"),
        mark=kwargs.get("mark"),
        flush_only=flush_only,
    )
    config_path = (ctx.obj or {}).get("config_path")
    if not config_path:
        return cli
    return merge_options(load_options(config_path), cli)


def resolve_policy(ctx: click.Context, flush_only: bool = False, **kwargs: Any) -> Policy:
    return resolve(build_options(ctx, flush_only=flush_only, **kwargs))


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Report a TransTunnelError and exit with its status."""
    try:
        yield
    except TransTunnelError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
        sys.exit(e.exit_code)
