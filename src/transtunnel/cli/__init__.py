"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from transtunnel import __version__


@click.group()
@click.version_option(version=__version__, prog_name="transtunnel")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file providing default values for the policy options.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """TransTunnel — classify traffic by address and mark proxy-bound packets for a tunnel."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from transtunnel.cli.apply import apply, flush  # noqa: F811
    from transtunnel.cli.dryrun import classify, show  # noqa: F811

    main.add_command(apply)
    main.add_command(flush)
    main.add_command(show)
    main.add_command(classify)


_register_commands()
