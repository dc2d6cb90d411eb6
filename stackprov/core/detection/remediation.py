"""
Remediation — typed fixes for diagnostic findings.

Every finding kind maps to one handler in ``FIX_HANDLERS``.  A handler
either repairs the host (start a unit, create a directory, regenerate
a generated file, pull a model) or returns advice for an operator with
``applied=False``.  Fixes run category by category in ``FIX_ORDER``:
directories and files exist before services start, and the runtime is
up before a model is pulled.

Owners come from ``Settings.ownership_targets()``, never from a path.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from stackprov.adapters.probes import ServiceState, service_state
from stackprov.adapters.shell.command import CommandResult, CommandRunner
from stackprov.core.engine.health import HealthChecker
from stackprov.core.models.findings import (
    CATEGORIES,
    EndpointDown,
    Finding,
    FixResult,
    GpuDriverProblem,
    MissingDirectory,
    MissingFile,
    ModelMissing,
    PortNotListening,
    ProblemRegistry,
    ResourceLow,
    ServiceDown,
    WrongOwnership,
)
from stackprov.core.models.settings import Settings
from stackprov.core.persistence.audit import AuditWriter, NullAuditWriter
from stackprov.core.plans.ai_stack import AiStackPlan

logger = logging.getLogger(__name__)

FIX_ORDER = ("filesystem", "services", "models", "system", "gpu", "network")

RESOURCE_ADVICE = {
    "memory_gb": "add swap: fallocate -l 16G /swapfile && chmod 600 /swapfile && mkswap /swapfile && swapon /swapfile",
    "free_memory_gb": "stop other workloads, or restart the stack services",
    "disk_usage_percent": "free space: apt-get clean, journalctl --vacuum-time=7d, docker system prune",
}


class Fixer:
    """Applies fixes on one host.

    Args:
        settings: Paths, units, owners, and the model name.
        runner: Runs every host command.
        plan: Source of the generated-file writers (default: built
            from settings and runner).
    """

    def __init__(self, settings: Settings, runner: CommandRunner, plan: AiStackPlan | None = None):
        self.settings = settings
        self.runner = runner
        self.plan = plan or AiStackPlan(settings, runner, HealthChecker())

    def run(self, command: list[str], retries: int = 1) -> CommandResult:
        return self.runner.execute(command, timeout=self.settings.command_timeout, retries=retries)

    def fix(self, finding: Finding) -> FixResult:
        result = FIX_HANDLERS[finding.kind](self, finding)
        if result.applied:
            logger.info("Fixed %s: %s", result.target, result.action)
        else:
            logger.warning("Not fixed %s: %s", result.target, result.detail or result.action)
        return result


def _failed(result: CommandResult) -> str:
    lines = (result.stderr or result.stdout).strip().splitlines()
    return f"`{result.command}` exited {result.exit_code}" + (f": {lines[-1]}" if lines else "")


# ── Handlers ───────────────────────────────────────────────────


def fix_service(fx: Fixer, f: ServiceDown) -> FixResult:
    if f.state == ServiceState.NOT_FOUND.value:
        return FixResult(
            kind=f.kind, target=f.service, action="install",
            detail="unit not installed, run `stackprov run ai-stack`",
        )
    actions = []
    if f.enabled is False:
        r = fx.run(["systemctl", "enable", f.service])
        if not r.ok:
            return FixResult(kind=f.kind, target=f.service, action="enable", detail=_failed(r))
        actions.append("enable")
    r = fx.run(["systemctl", "start", f.service])
    actions.append("start")
    if not r.ok:
        return FixResult(
            kind=f.kind, target=f.service, action="+".join(actions),
            detail=f"{_failed(r)}; see journalctl -u {f.service}",
        )
    return FixResult(kind=f.kind, target=f.service, action="+".join(actions), applied=True)


def _owner_for(fx: Fixer, path: str) -> str | None:
    for target in fx.settings.ownership_targets():
        if target.path == path:
            return f"{target.owner}:{target.group}"
    return None


def fix_missing_directory(fx: Fixer, f: MissingDirectory) -> FixResult:
    owner = _owner_for(fx, f.path)
    if owner is None:
        return FixResult(kind=f.kind, target=f.path, action="mkdir", detail="no owner declared for this path")
    try:
        Path(f.path).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return FixResult(kind=f.kind, target=f.path, action="mkdir", detail=str(e))
    r = fx.run(["chown", owner, f.path])
    if not r.ok:
        return FixResult(kind=f.kind, target=f.path, action="mkdir+chown", detail=_failed(r))
    return FixResult(kind=f.kind, target=f.path, action="mkdir+chown", applied=True, detail=owner)


def fix_ownership(fx: Fixer, f: WrongOwnership) -> FixResult:
    r = fx.run(["chown", "-R", f.expected, f.path])
    if not r.ok:
        return FixResult(kind=f.kind, target=f.path, action="chown", detail=_failed(r))
    return FixResult(kind=f.kind, target=f.path, action="chown", applied=True, detail=f.expected)


def fix_missing_file(fx: Fixer, f: MissingFile) -> FixResult:
    writer = fx.plan.writers().get(Path(f.path))
    if writer is None:
        return FixResult(kind=f.kind, target=f.path, action="regenerate", detail="not a generated file")
    try:
        writer()
    except OSError as e:
        return FixResult(kind=f.kind, target=f.path, action="regenerate", detail=str(e))
    if f.path.endswith(".service"):
        fx.run(["systemctl", "daemon-reload"])
    return FixResult(kind=f.kind, target=f.path, action="regenerate", applied=True)


def fix_model(fx: Fixer, f: ModelMissing) -> FixResult:
    runtime = fx.settings.runtime_service
    if service_state(runtime, fx.runner) != ServiceState.ACTIVE:
        r = fx.run(["systemctl", "start", runtime])
        if not r.ok:
            return FixResult(kind=f.kind, target=f.model, action="pull", detail=f"cannot start {runtime}: {_failed(r)}")
    # the API may still be starting; retries cover that window
    r = fx.run(["ollama", "pull", f.model], retries=fx.settings.retry.attempts)
    if not r.ok:
        return FixResult(
            kind=f.kind, target=f.model, action="pull",
            detail=f"{_failed(r)}; try: ollama pull {f.model}",
        )
    return FixResult(kind=f.kind, target=f.model, action="pull", applied=True)


def advise_resource(fx: Fixer, f: ResourceLow) -> FixResult:
    return FixResult(
        kind=f.kind, target=f.resource, action="manual",
        detail=RESOURCE_ADVICE.get(f.resource, f.summary),
    )


def advise_gpu(fx: Fixer, f: GpuDriverProblem) -> FixResult:
    if f.state == "missing":
        detail = "install the driver (ubuntu-drivers autoinstall) and reboot"
    else:
        detail = "check dmesg, then reboot or reinstall the driver"
    return FixResult(kind=f.kind, target="nvidia", action="manual", detail=detail)


def advise_network(fx: Fixer, f: PortNotListening | EndpointDown) -> FixResult:
    if isinstance(f, PortNotListening):
        target, unit = f"port {f.port}", f.service
    else:
        target, unit = f.url, f.name.partition(" ")[0]
    return FixResult(
        kind=f.kind, target=target, action="manual",
        detail=f"check the service log: journalctl -u {unit or '<unit>'}",
    )


FixHandler = Callable[[Fixer, Finding], FixResult]

FIX_HANDLERS: dict[str, FixHandler] = {
    "service_down": fix_service,
    "missing_directory": fix_missing_directory,
    "wrong_ownership": fix_ownership,
    "missing_file": fix_missing_file,
    "model_missing": fix_model,
    "resource_low": advise_resource,
    "gpu_driver": advise_gpu,
    "port_not_listening": advise_network,
    "endpoint_down": advise_network,
}


def apply_fixes(
    registry: ProblemRegistry,
    settings: Settings,
    runner: CommandRunner,
    plan: AiStackPlan | None = None,
    audit: AuditWriter | None = None,
) -> list[FixResult]:
    """Fix every finding in ``registry`` and record the results on it.

    Returns the new FixResults, one per finding, in fix order.
    """
    fixer = Fixer(settings, runner, plan=plan)
    audit = audit or NullAuditWriter()
    order = FIX_ORDER + tuple(c for c in (*CATEGORIES, *registry.findings) if c not in FIX_ORDER)

    results = []
    for category in dict.fromkeys(order):
        for finding in registry.by_category(category):
            result = fixer.fix(finding)
            audit.record(
                "fix", result.target, "applied" if result.applied else "skipped",
                run_id=runner.run_id, detail=result.detail,
                context={"kind": result.kind, "action": result.action},
            )
            results.append(result)

    registry.fixes.extend(results)
    logger.info("Fixes applied: %d of %d", sum(r.applied for r in results), len(results))
    return results
