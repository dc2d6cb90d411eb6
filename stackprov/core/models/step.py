"""
Step and StepOutcome models — the execution contract.

Steps describe provisioning work; outcomes record what happened.
A step body signals failure by raising.  The orchestrator converts
that into a failed outcome — outcomes never carry live exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from stackprov.core.models.context import RunContext

StepAction = Callable[["RunContext"], Any]


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Step:
    """One provisioning action.

    Steps are defined when the plan is built and never mutated.
    ``owner`` names the account that should own whatever the step
    creates; it is declared, never guessed from a path.
    """

    id: str
    action: StepAction
    depends_on: tuple[str, ...] = ()
    idempotent: bool = True
    undo: StepAction | None = None
    category: str = ""
    description: str = ""
    mutating: bool = True
    owner: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Step id must be a non-empty string")
        # accept lists for convenience, store tuples
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "depends_on": list(self.depends_on),
            "idempotent": self.idempotent,
            "has_undo": self.undo is not None,
            "mutating": self.mutating,
            "owner": self.owner,
        }


class StepOutcome(BaseModel):
    """Result of one execution attempt of a step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    status: StepStatus
    duration_ms: int = 0
    error_detail: str | None = None
    started_at: str = Field(default_factory=_now_iso)

    @model_validator(mode="after")
    def _error_iff_failed(self) -> StepOutcome:
        if self.status == StepStatus.FAILED and not self.error_detail:
            raise ValueError("A failed outcome requires error_detail")
        if self.status != StepStatus.FAILED and self.error_detail is not None:
            raise ValueError("error_detail is only allowed on failed outcomes")
        return self

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @classmethod
    def success(cls, step_id: str, duration_ms: int = 0, **kwargs: Any) -> StepOutcome:
        return cls(step_id=step_id, status=StepStatus.SUCCESS, duration_ms=duration_ms, **kwargs)

    @classmethod
    def failure(cls, step_id: str, error: str, duration_ms: int = 0, **kwargs: Any) -> StepOutcome:
        return cls(
            step_id=step_id,
            status=StepStatus.FAILED,
            error_detail=error or "unknown error",
            duration_ms=duration_ms,
            **kwargs,
        )

    @classmethod
    def skip(cls, step_id: str, **kwargs: Any) -> StepOutcome:
        return cls(step_id=step_id, status=StepStatus.SKIPPED, **kwargs)
