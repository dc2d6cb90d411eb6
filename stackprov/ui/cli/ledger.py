"""
CLI commands for the persisted run state — ledger and audit trail.
"""

from __future__ import annotations

import json
import sys

import click

from stackprov.ui.cli.common import EXIT_FAILED, get_settings, open_audit, open_ledger


@click.group()
def ledger() -> None:
    """Completed-step ledger — show or reset."""


@ledger.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def ledger_show(ctx: click.Context, as_json: bool) -> None:
    """List steps recorded as done."""
    led = open_ledger(get_settings(ctx))

    if as_json:
        click.echo(json.dumps(led.to_dict(), indent=2))
        return

    if not len(led):
        click.echo("No completed steps recorded.")
        return

    click.secho(f"\n📒 {len(led)} completed step(s)  ({led.path})", fg="cyan", bold=True)
    for sid in led.all_done():
        click.echo(f"   ✓ {sid:<20} {led.completed_at(sid)}")
    click.echo()


@ledger.command("reset")
@click.option("--step", "step_id", default=None, help="Forget a single step instead of all.")
@click.option("--yes", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def ledger_reset(ctx: click.Context, step_id: str | None, yes: bool) -> None:
    """Forget completed steps so the next run executes them again."""
    led = open_ledger(get_settings(ctx))

    if step_id:
        if not led.unmark(step_id):
            click.secho(f"❌ Step not in ledger: {step_id}", fg="red", err=True)
            sys.exit(EXIT_FAILED)
        click.secho(f"✅ Forgot {step_id}", fg="green")
        return

    if not yes:
        click.confirm(f"Forget all {len(led)} completed step(s)?", abort=True)
    led.clear()
    click.secho("✅ Ledger cleared", fg="green")


@click.command("audit")
@click.option("-n", "count", default=20, show_default=True, help="Number of entries.")
@click.option("--run", "run_id", default=None, help="Only entries of this run id.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def audit(ctx: click.Context, count: int, run_id: str | None, as_json: bool) -> None:
    """Show the most recent audit trail entries."""
    writer = open_audit(get_settings(ctx))
    entries = writer.read_recent(count, run_id=run_id)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("Audit trail is empty.")
        return

    status_colors = {"ok": "green", "success": "green", "completed": "green", "failed": "red"}
    for e in entries:
        click.echo(f"{e.timestamp[:19]}  {e.event:<8} ", nl=False)
        click.secho(f"{e.status:<10}", fg=status_colors.get(e.status, "white"), nl=False)
        line = f" {e.subject}"
        if e.attempt:
            line += f"  (attempt {e.attempt}, exit {e.exit_code})"
        if e.detail:
            line += f"  — {e.detail}"
        click.echo(line)
