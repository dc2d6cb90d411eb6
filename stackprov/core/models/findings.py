"""
Diagnostic findings — tagged problem variants.

Each problem the diagnostics can detect is its own model, discriminated
by ``kind``.  The ProblemRegistry groups findings by category so
callers never parse meaning out of string keys.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ServiceDown(BaseModel):
    kind: Literal["service_down"] = "service_down"
    service: str
    state: str = "inactive"   # inactive, not-found
    enabled: bool | None = None

    @property
    def summary(self) -> str:
        if self.state == "not-found":
            return f"{self.service} service not installed"
        suffix = "" if self.enabled is None else (" (enabled)" if self.enabled else " (not enabled)")
        return f"{self.service} service is not running{suffix}"


class PortNotListening(BaseModel):
    kind: Literal["port_not_listening"] = "port_not_listening"
    port: int
    service: str = ""

    @property
    def summary(self) -> str:
        return f"Port {self.port} ({self.service}) is not listening"


class EndpointDown(BaseModel):
    kind: Literal["endpoint_down"] = "endpoint_down"
    url: str
    name: str = ""

    @property
    def summary(self) -> str:
        return f"{self.name or 'Endpoint'} not responding: {self.url}"


class MissingDirectory(BaseModel):
    kind: Literal["missing_directory"] = "missing_directory"
    path: str

    @property
    def summary(self) -> str:
        return f"Directory missing: {self.path}"


class WrongOwnership(BaseModel):
    kind: Literal["wrong_ownership"] = "wrong_ownership"
    path: str
    expected: str
    actual: str

    @property
    def summary(self) -> str:
        return f"Incorrect ownership on {self.path} (expected {self.expected}, actual {self.actual})"


class MissingFile(BaseModel):
    kind: Literal["missing_file"] = "missing_file"
    path: str

    @property
    def summary(self) -> str:
        return f"File missing: {self.path}"


class ModelMissing(BaseModel):
    kind: Literal["model_missing"] = "model_missing"
    model: str
    available: list[str] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        if not self.available:
            return f"No models available (wanted {self.model})"
        return f"Model {self.model} not found"


class ResourceLow(BaseModel):
    kind: Literal["resource_low"] = "resource_low"
    resource: str            # memory, free_memory, disk, disk_usage, cpu_cores
    actual: float
    required: float

    @property
    def summary(self) -> str:
        return f"Insufficient {self.resource}: {self.actual:g} (required {self.required:g})"


class GpuDriverProblem(BaseModel):
    kind: Literal["gpu_driver"] = "gpu_driver"
    state: Literal["missing", "broken"]
    detail: str = ""

    @property
    def summary(self) -> str:
        if self.state == "missing":
            return "NVIDIA GPU detected but drivers not installed"
        return "NVIDIA drivers installed but not working"


Finding = Annotated[
    Union[
        ServiceDown,
        PortNotListening,
        EndpointDown,
        MissingDirectory,
        WrongOwnership,
        MissingFile,
        ModelMissing,
        ResourceLow,
        GpuDriverProblem,
    ],
    Field(discriminator="kind"),
]

_finding_adapter: TypeAdapter[Finding] = TypeAdapter(Finding)


def parse_finding(data: dict[str, Any]) -> Finding:
    """Rebuild a finding from its serialized form."""
    return _finding_adapter.validate_python(data)


CATEGORIES = ("system", "gpu", "services", "network", "filesystem", "models")


class FixResult(BaseModel):
    """What the fixer did (or advises) about one finding.

    ``applied`` is False for findings that need an operator, and for
    fixes whose command failed; ``detail`` says which.
    """

    kind: str
    target: str
    action: str
    applied: bool = False
    detail: str = ""


class ProblemRegistry(BaseModel):
    """Findings grouped by diagnostic category."""

    findings: dict[str, list[Finding]] = Field(default_factory=dict)
    fixes: list[FixResult] = Field(default_factory=list)

    def add(self, category: str, finding: Finding) -> None:
        self.findings.setdefault(category, []).append(finding)

    def extend(self, category: str, findings: list[Finding]) -> None:
        for f in findings:
            self.add(category, f)

    def by_category(self, category: str) -> list[Finding]:
        return list(self.findings.get(category, []))

    def of_kind(self, kind: str) -> list[Finding]:
        return [f for items in self.findings.values() for f in items if f.kind == kind]

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.findings.values())

    @property
    def healthy(self) -> bool:
        return self.total == 0

    @property
    def fixed(self) -> int:
        return sum(1 for f in self.fixes if f.applied)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "categories": {
                cat: [f.model_dump(mode="json") | {"summary": f.summary} for f in items]
                for cat, items in self.findings.items()
            },
            "fixed": self.fixed,
            "fixes": [f.model_dump(mode="json") for f in self.fixes],
        }
