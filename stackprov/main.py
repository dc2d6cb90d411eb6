"""
Stack Provisioner — CLI entrypoint.

Usage:
    stackprov --help
    stackprov run ai-stack --dry-run
    stackprov diagnose
"""

from __future__ import annotations

from pathlib import Path

import click

from stackprov import __version__
from stackprov.core.observability.logging_config import configure_from_env


@click.group()
@click.version_option(version=__version__, prog_name="stackprov")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to provision.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """Stack Provisioner — install and check a local AI stack."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    configure_from_env(debug=debug, verbose=verbose, quiet=quiet)


# ── Register sub-command groups from stackprov/ui/cli/ ─────────────

from stackprov.ui.cli.diagnose import diagnose
from stackprov.ui.cli.ledger import audit, ledger
from stackprov.ui.cli.provision import plan, plans, run

cli.add_command(run)
cli.add_command(plan)
cli.add_command(plans)
cli.add_command(diagnose)
cli.add_command(ledger)
cli.add_command(audit)


if __name__ == "__main__":
    cli()
