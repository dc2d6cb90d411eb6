"""
Domain models — Pydantic types and dataclasses for the provisioner.

All models are re-exported here for convenient access:

    from stackprov.core.models import Step, StepOutcome, RunContext, RunReport
"""

from stackprov.core.models.context import EnvironmentFacts, RunContext
from stackprov.core.models.findings import (
    EndpointDown,
    Finding,
    MissingDirectory,
    MissingFile,
    ModelMissing,
    PortNotListening,
    ProblemRegistry,
    ResourceLow,
    ServiceDown,
    WrongOwnership,
)
from stackprov.core.models.report import BackupRecord, RunReport, RunStatus
from stackprov.core.models.settings import Settings
from stackprov.core.models.step import Step, StepOutcome, StepStatus

__all__ = [
    "BackupRecord",
    "EndpointDown",
    "EnvironmentFacts",
    "Finding",
    "MissingDirectory",
    "MissingFile",
    "ModelMissing",
    "PortNotListening",
    "ProblemRegistry",
    "ResourceLow",
    "RunContext",
    "RunReport",
    "RunStatus",
    "ServiceDown",
    "Settings",
    "Step",
    "StepOutcome",
    "StepStatus",
    "WrongOwnership",
]
