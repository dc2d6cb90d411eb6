"""
Error taxonomy for provisioning runs.

Only ``PlanError`` and ``ConfigError`` escape to the caller of a run.
Step failures are converted into outcomes at the orchestrator
boundary; backup problems are logged as warnings unless a required
restore fails.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for all provisioner errors."""


class PlanError(ProvisionError):
    """The step graph is malformed (cycle, unknown or duplicate id)."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or [message]


class StepExecutionError(ProvisionError):
    """A step body failed."""

    def __init__(self, step_id: str, detail: str):
        super().__init__(f"Step '{step_id}' failed: {detail}")
        self.step_id = step_id
        self.detail = detail


class BackupError(ProvisionError):
    """Snapshot of the pre-install state could not be created."""


class RestoreError(ProvisionError):
    """A snapshot could not be restored."""


class ConfigError(ProvisionError):
    """Raised when provision.yml is invalid or unreadable."""
