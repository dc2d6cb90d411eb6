"""
CLI commands for running plans.

    stackprov plans
    stackprov plan ai-stack [--category runtime]
    stackprov run ai-stack [--dry-run] [--force] [--category NAME]
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from stackprov.core.errors import PlanError
from stackprov.core.models.report import RunReport, RunStatus
from stackprov.core.models.step import StepStatus
from stackprov.ui.cli.common import (
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_INTERRUPTED,
    EXIT_INVALID,
    EXIT_OK,
    build_runner,
    get_settings,
    open_audit,
    open_ledger,
)

_STATUS_ICONS = {
    StepStatus.SUCCESS: ("✓", "green"),
    StepStatus.FAILED: ("✗", "red"),
    StepStatus.SKIPPED: ("⊘", "yellow"),
}


def _plan_error(e: PlanError, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps({"error": str(e), "problems": e.problems}, indent=2))
    else:
        click.secho(f"❌ {e}", fg="red", err=True)
        for problem in e.problems:
            if problem != str(e):
                click.echo(f"   • {problem}", err=True)
    sys.exit(EXIT_INVALID)


def exit_code_for(report: RunReport) -> int:
    if report.status == RunStatus.COMPLETED:
        return EXIT_OK
    if report.status == RunStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_INTERRUPTED if report.interrupted else EXIT_FAILED


@click.command("plans")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def plans(as_json: bool) -> None:
    """List the available plans."""
    from stackprov.core.plans import list_plans

    infos = list_plans()
    if as_json:
        click.echo(json.dumps([{"name": i.name, "description": i.description} for i in infos], indent=2))
        return

    for info in infos:
        click.secho(f"  {info.name}", fg="cyan", bold=True, nl=False)
        click.echo(f"  {info.description}")


@click.command("plan")
@click.argument("plan_name")
@click.option("--category", default=None, help="Only this category (plus its dependencies).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, plan_name: str, category: str | None, as_json: bool) -> None:
    """Show the resolved step order of PLAN_NAME without running it."""
    from stackprov.core.engine.health import HealthChecker
    from stackprov.core.engine.orchestrator import Orchestrator
    from stackprov.core.plans import get_plan

    settings = get_settings(ctx)
    ledger = open_ledger(settings)
    try:
        info = get_plan(plan_name)
        steps = info.build(settings, build_runner(settings), HealthChecker())
        ordered = Orchestrator(ledger=ledger).plan(steps, category)
    except PlanError as e:
        _plan_error(e, as_json)
        return

    if as_json:
        rows = [s.describe() | {"done": ledger.is_done(s.id)} for s in ordered]
        click.echo(json.dumps({"plan": plan_name, "category": category, "steps": rows}, indent=2))
        return

    click.secho(f"\n📋 {plan_name}: {len(ordered)} step(s)", fg="cyan", bold=True)
    for i, step in enumerate(ordered, 1):
        done = " ✓" if ledger.is_done(step.id) else ""
        deps = f"  ← {', '.join(step.depends_on)}" if step.depends_on else ""
        click.echo(f"  {i:>2}. [{step.category or '-'}] {step.id}{done}{deps}")
        if ctx.obj.get("verbose") and step.description:
            click.echo(f"        {step.description}")
    click.echo()


@click.command("run")
@click.argument("plan_name")
@click.option("--dry-run", is_flag=True, help="Resolve and print the plan; run nothing.")
@click.option("--force", is_flag=True, help="Re-run steps already recorded as done.")
@click.option(
    "--no-cleanup-on-error",
    "no_cleanup",
    is_flag=True,
    help="Leave a failed install in place (no undo, no restore).",
)
@click.option("--category", default=None, help="Only this category (plus its dependencies).")
@click.option("--skip-validation", is_flag=True, help="Continue when host requirements are not met.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    plan_name: str,
    dry_run: bool,
    force: bool,
    no_cleanup: bool,
    category: str | None,
    skip_validation: bool,
    as_json: bool,
) -> None:
    """Run PLAN_NAME against this host.

    Exit codes: 0 completed, 1 failed, 2 invalid plan or config,
    3 dry run, 130 interrupted.

    Examples:

        stackprov run ai-stack --dry-run

        stackprov run ai-stack --category runtime --force
    """
    from stackprov.core.detection.environment import gather_facts
    from stackprov.core.engine.health import HealthChecker
    from stackprov.core.engine.orchestrator import Orchestrator, generate_run_id
    from stackprov.core.models.context import RunContext
    from stackprov.core.observability.logging_config import bind_run_id
    from stackprov.core.persistence.backup import BackupManager
    from stackprov.core.plans import get_plan

    settings = get_settings(ctx)
    audit = open_audit(settings)
    runner = build_runner(settings, audit)
    runner.run_id = generate_run_id()
    bind_run_id(runner.run_id)
    health = HealthChecker(settings.health.timeout, settings.health.poll_interval)

    try:
        info = get_plan(plan_name)
        steps = info.build(settings, runner, health, skip_validation=skip_validation)
    except PlanError as e:
        _plan_error(e, as_json)
        return

    facts = gather_facts(runner, install_base=settings.install_dir, detect_hardware=not dry_run)
    run_ctx = RunContext(
        dry_run=dry_run,
        force_rerun=force,
        cleanup_on_error=not no_cleanup,
        category=category,
        facts=facts,
    )
    orchestrator = Orchestrator(
        ledger=open_ledger(settings),
        backup=BackupManager(Path(settings.backup_dir)),
        backup_paths=settings.backup_paths,
        audit=audit,
    )

    try:
        report = orchestrator.run(steps, run_ctx, plan_name=plan_name, run_id=runner.run_id)
    except PlanError as e:
        _plan_error(e, as_json)
        return

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report, quiet=ctx.obj.get("quiet", False))
    sys.exit(exit_code_for(report))


def _print_report(report: RunReport, quiet: bool = False) -> None:
    if report.status == RunStatus.ABORTED:
        click.secho(f"\n🔎 Dry run — {len(report.planned)} step(s) would run:", fg="cyan", bold=True)
        for i, sid in enumerate(report.planned, 1):
            click.echo(f"  {i:>2}. {sid}")
        click.echo()
        return

    if not quiet:
        click.echo()
        for outcome in report.outcomes:
            icon, color = _STATUS_ICONS[outcome.status]
            click.secho(f"  {icon} {outcome.step_id}", fg=color, nl=False)
            if outcome.failed:
                click.echo(f"  {outcome.error_detail}")
            elif outcome.status == StepStatus.SKIPPED:
                click.echo("  (already done)")
            else:
                click.echo(f"  ({outcome.duration_ms}ms)")
        for sid in report.not_attempted:
            click.echo(f"  · {sid}  (not attempted)")

    for warning in report.warnings:
        click.secho(f"⚠️  {warning}", fg="yellow")

    if report.status == RunStatus.COMPLETED:
        click.secho(f"\n✅ {report.plan_name} completed ({report.run_id})", fg="green", bold=True)
        click.echo()
        return

    headline = "interrupted" if report.interrupted else "failed"
    click.secho(f"\n❌ {report.plan_name} {headline} ({report.run_id})", fg="red", bold=True)
    if report.error:
        click.echo(f"   {report.error}")
    if report.rolled_back:
        click.echo(f"   Rolled back: {', '.join(report.rolled_back)}")
    for sid, err in report.undo_errors.items():
        click.secho(f"   Undo of {sid} failed: {err}", fg="yellow")
    if report.restored and report.backup is not None:
        click.echo(f"   Restored from {report.backup.archive}")
    if report.restore_error:
        click.secho(f"   Restore failed: {report.restore_error} — manual recovery required", fg="red")
    click.echo()
