"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import shlex
from pathlib import Path

import pytest

from stackprov.adapters.shell.command import CommandResult
from stackprov.core.models.report import BackupRecord
from stackprov.core.models.settings import Settings


class FakeRunner:
    """Stands in for CommandRunner; answers by command prefix.

    ``responses`` maps a command prefix to ``(exit_code, stdout)``.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, responses: dict[str, tuple[int, str]] | None = None):
        self.responses = responses or {}
        self.calls: list[str] = []
        self.run_id = ""

    def execute(self, command, timeout=None, retries=None, backoff=None, **kwargs) -> CommandResult:
        text = command if isinstance(command, str) else shlex.join(command)
        self.calls.append(text)
        for prefix, (exit_code, stdout) in self.responses.items():
            if text.startswith(prefix):
                return CommandResult(command=text, exit_code=exit_code, stdout=stdout)
        return CommandResult(command=text, exit_code=0)


class Journal:
    """Records step and undo calls in the order they happen."""

    def __init__(self):
        self.events: list[str] = []

    def action(self, name: str):
        def _run(ctx):
            self.events.append(name)
        return _run

    def undo(self, name: str):
        def _undo(ctx):
            self.events.append(f"undo:{name}")
        return _undo

    def failing(self, name: str, exc: BaseException):
        def _run(ctx):
            self.events.append(name)
            raise exc
        return _run


class FakeBackup:
    """BackupManager double that counts snapshot/restore calls."""

    def __init__(self, snapshot_error: BaseException | None = None, restore_error: BaseException | None = None):
        self.snapshots: list[list[str]] = []
        self.restores: list[BackupRecord] = []
        self.snapshot_error = snapshot_error
        self.restore_error = restore_error

    def snapshot(self, paths):
        self.snapshots.append(list(paths))
        if self.snapshot_error:
            raise self.snapshot_error
        return BackupRecord(paths=list(paths), archive="/backups/pre-install-test.tar.gz")

    def restore(self, record):
        self.restores.append(record)
        if self.restore_error:
            raise self.restore_error


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def journal() -> Journal:
    return Journal()


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def make_backup():
    return FakeBackup


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under tmp_path."""
    root = tmp_path / "host"
    return Settings(
        install_dir=str(root / "opt" / "agent0"),
        config_dir=str(root / "etc" / "agent0"),
        log_dir=str(root / "var" / "log" / "agent0"),
        state_dir=str(tmp_path / "state"),
        backup_dir=str(root / "opt" / "agent0" / "backups"),
        backup_paths=[str(root / "opt" / "agent0"), str(root / "etc" / "agent0")],
        systemd_dir=str(root / "etc" / "systemd"),
    )
