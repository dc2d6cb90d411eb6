"""
Shared CLI plumbing — settings, state files, and exit codes.
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from stackprov.adapters.shell.command import CommandRunner
from stackprov.core.errors import ConfigError
from stackprov.core.models.settings import Settings
from stackprov.core.persistence.audit import AuditWriter
from stackprov.core.persistence.ledger import DEFAULT_LEDGER_FILE, StateLedger
from stackprov.core.reliability.backoff import BackoffPolicy

# Process exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_ABORTED = 3
EXIT_INTERRUPTED = 130


def get_settings(ctx: click.Context) -> Settings:
    """Load settings once per invocation; bad config exits with code 2."""
    cached = ctx.obj.get("settings")
    if cached is not None:
        return cached

    from stackprov.core.config.loader import load_settings

    try:
        settings = load_settings(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    ctx.obj["settings"] = settings
    return settings


def state_dir(settings: Settings) -> Path:
    return Path(settings.state_dir)


def open_ledger(settings: Settings) -> StateLedger:
    return StateLedger.load(state_dir(settings) / DEFAULT_LEDGER_FILE)


def open_audit(settings: Settings) -> AuditWriter:
    return AuditWriter(state_dir=state_dir(settings))


def build_runner(settings: Settings, audit: AuditWriter | None = None) -> CommandRunner:
    return CommandRunner(
        backoff=BackoffPolicy.from_settings(settings.retry),
        default_timeout=settings.command_timeout,
        audit=audit,
    )
