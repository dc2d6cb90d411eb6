"""
RunContext — the single run-scoped state shared by all steps.

Built once at the start of a run (flags + detected environment
facts) and frozen afterwards.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EnvironmentFacts(BaseModel):
    """Host facts gathered once before any step runs.

    Every field is best-effort: ``None`` means the probe could not
    determine the value.
    """

    model_config = ConfigDict(frozen=True)

    os_id: str | None = None
    os_version: str | None = None
    os_pretty_name: str | None = None
    arch: str | None = None
    cpu_cores: int | None = None
    memory_gb: float | None = None
    memory_available_gb: float | None = None
    swap_gb: float | None = None
    disk_free_gb: float | None = None
    disk_usage_percent: float | None = None
    gpu_present: bool = False
    gpu_name: str | None = None
    virtualization: str | None = None
    is_root: bool = False


class RunContext(BaseModel):
    """Flags and facts for one orchestration run (read-only)."""

    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    force_rerun: bool = False
    cleanup_on_error: bool = True
    category: str | None = None
    facts: EnvironmentFacts = Field(default_factory=EnvironmentFacts)
