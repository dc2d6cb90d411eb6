"""
RunReport and BackupRecord — what a run leaves behind.

The report enumerates every outcome in execution order so a reader
can tell which steps completed and survived a rollback, which were
undone, and which were never attempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from stackprov.core.models.step import StepOutcome, StepStatus


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class BackupRecord(BaseModel):
    """A pre-install snapshot of a set of paths."""

    paths: list[str] = Field(default_factory=list)
    archive: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


@dataclass
class RunReport:
    """Result of running a plan."""

    run_id: str = ""
    plan_name: str = ""
    status: RunStatus = RunStatus.COMPLETED
    planned: list[str] = field(default_factory=list)
    outcomes: list[StepOutcome] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)
    undo_errors: dict[str, str] = field(default_factory=dict)
    backup: BackupRecord | None = None
    restored: bool = False
    restore_error: str | None = None
    interrupted: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        return [o.step_id for o in self.outcomes if o.status == StepStatus.SUCCESS]

    @property
    def failed(self) -> list[str]:
        return [o.step_id for o in self.outcomes if o.status == StepStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return [o.step_id for o in self.outcomes if o.status == StepStatus.SKIPPED]

    @property
    def not_attempted(self) -> list[str]:
        seen = {o.step_id for o in self.outcomes}
        return [sid for sid in self.planned if sid not in seen]

    @property
    def surviving(self) -> list[str]:
        """Succeeded steps whose effects were not undone."""
        undone = set(self.rolled_back)
        return [sid for sid in self.succeeded if sid not in undone]

    @property
    def error(self) -> str | None:
        for o in self.outcomes:
            if o.failed:
                return o.error_detail
        return None

    def outcome_for(self, step_id: str) -> StepOutcome | None:
        for o in self.outcomes:
            if o.step_id == step_id:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan": self.plan_name,
            "status": self.status.value,
            "planned": self.planned,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "not_attempted": self.not_attempted,
            "rolled_back": self.rolled_back,
            "surviving": self.surviving,
            "undo_errors": self.undo_errors,
            "backup": self.backup.model_dump(mode="json") if self.backup else None,
            "restored": self.restored,
            "restore_error": self.restore_error,
            "interrupted": self.interrupted,
            "warnings": self.warnings,
        }
