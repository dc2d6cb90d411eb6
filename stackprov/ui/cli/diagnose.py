"""
CLI command for troubleshooting an installed stack.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from stackprov.ui.cli.common import EXIT_FAILED, build_runner, get_settings, open_audit

_CATEGORY_TITLES = {
    "system": "🖥  System",
    "gpu": "🎮 GPU",
    "services": "⚙️  Services",
    "network": "🌐 Network",
    "filesystem": "📁 Filesystem",
    "models": "🧠 Models",
}


def _show_findings(registry, categories) -> None:
    click.secho(f"\n🔍 {registry.total} issue(s) found", fg="yellow", bold=True)
    for category in categories:
        items = registry.by_category(category)
        if not items:
            continue
        click.echo()
        click.secho(f"   {_CATEGORY_TITLES.get(category, category)}", bold=True)
        for finding in items:
            click.echo(f"     • {finding.summary}")
    click.echo()


def _show_fixes(registry) -> None:
    click.secho(f"🔧 {registry.fixed} of {len(registry.fixes)} issue(s) fixed", bold=True)
    for fix in registry.fixes:
        if fix.applied:
            click.secho(f"     ✅ {fix.target}: {fix.action}", fg="green")
        else:
            click.secho(f"     ⚠️  {fix.target}: {fix.detail or fix.action}", fg="yellow")
    click.echo()


@click.command("diagnose")
@click.option("--fix", "apply", is_flag=True, help="Apply automatic fixes, then check again.")
@click.option("--save-report", is_flag=True, help="Write a JSON report to the log directory.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def diagnose(ctx: click.Context, apply: bool, save_report: bool, as_json: bool) -> None:
    """Check services, ports, files, GPU, and models; exit 1 on any finding.

    With --fix, every finding is handed to its fixer (start/enable a
    unit, create or chown a directory, regenerate a config file, pull
    the model) and the checks run again.  The exit code reflects what
    is left.
    """
    from stackprov.core.detection import diagnostics
    from stackprov.core.detection.environment import gather_facts
    from stackprov.core.models.findings import CATEGORIES

    settings = get_settings(ctx)
    audit = open_audit(settings)
    runner = build_runner(settings, audit=audit)
    facts = gather_facts(runner, install_base=settings.install_dir)
    registry = diagnostics.run_diagnostics(settings, runner, facts=facts)

    if apply and not registry.healthy:
        from stackprov.core.detection.remediation import apply_fixes

        if not as_json:
            _show_findings(registry, CATEGORIES)
        fixes = apply_fixes(registry, settings, runner, audit=audit)
        registry = diagnostics.run_diagnostics(settings, runner, facts=facts)
        registry.fixes = fixes

    report_path = None
    if save_report:
        try:
            report_path = diagnostics.save_report(registry, Path(settings.log_dir), facts=facts)
        except OSError as e:
            click.secho(f"❌ Cannot save report: {e}", fg="red", err=True)

    code = 0 if registry.healthy else EXIT_FAILED
    if as_json:
        data = registry.to_dict()
        if report_path is not None:
            data["report"] = str(report_path)
        click.echo(json.dumps(data, indent=2))
        sys.exit(code)

    if registry.fixes:
        _show_fixes(registry)
    if registry.healthy:
        click.secho("✅ No issues detected", fg="green", bold=True)
    else:
        _show_findings(registry, CATEGORIES)
    if report_path is not None:
        click.echo(f"📄 Report saved to {report_path}")
    sys.exit(code)
