"""
Diagnostics — inspect an installed stack and register typed findings.

Checks six categories (system, gpu, services, network, filesystem,
models) and returns a ProblemRegistry.  Nothing here changes the
host; fixes live in remediation.py.  Expected ownership comes from
settings, never from the text of a path.
"""

from __future__ import annotations

import grp
import json
import logging
import pwd
from datetime import datetime
from pathlib import Path
from typing import Callable

from stackprov.adapters.probes import ServiceState, check_http, port_listening, service_enabled, service_state
from stackprov.adapters.shell.command import CommandRunner
from stackprov.core.detection.environment import check_requirements
from stackprov.core.models.context import EnvironmentFacts
from stackprov.core.models.findings import (
    EndpointDown,
    GpuDriverProblem,
    MissingDirectory,
    MissingFile,
    ModelMissing,
    PortNotListening,
    ProblemRegistry,
    ServiceDown,
    WrongOwnership,
)
from stackprov.core.models.settings import Settings

logger = logging.getLogger(__name__)

HttpCheck = Callable[[str], bool]
PortCheck = Callable[[str, int], bool]


def diagnose_system(registry: ProblemRegistry, facts: EnvironmentFacts, settings: Settings) -> None:
    # cpu cores and total disk only matter at install time
    for finding in check_requirements(facts, settings.requirements):
        if finding.resource in ("memory_gb", "free_memory_gb", "disk_usage_percent"):
            registry.add("system", finding)


def diagnose_gpu(registry: ProblemRegistry, runner: CommandRunner) -> None:
    lspci = runner.execute(["lspci"], timeout=10, retries=1)
    if not lspci.ok or "nvidia" not in lspci.stdout.lower():
        logger.info("No NVIDIA GPU detected, CPU mode")
        return
    smi = runner.execute(["nvidia-smi"], timeout=30, retries=1)
    if smi.exit_code == 127:
        registry.add("gpu", GpuDriverProblem(state="missing"))
    elif not smi.ok:
        detail = (smi.stderr or smi.stdout).strip().splitlines()
        registry.add("gpu", GpuDriverProblem(state="broken", detail=detail[-1] if detail else ""))
    else:
        logger.info("NVIDIA drivers are functional")


def diagnose_services(registry: ProblemRegistry, settings: Settings, runner: CommandRunner) -> None:
    for name in (settings.runtime_service, settings.agent_service, "docker"):
        state = service_state(name, runner)
        if state == ServiceState.ACTIVE:
            logger.info("%s service is running", name)
            continue
        enabled = service_enabled(name, runner) if state == ServiceState.INACTIVE else None
        registry.add("services", ServiceDown(service=name, state=state.value, enabled=enabled))


def diagnose_network(
    registry: ProblemRegistry,
    settings: Settings,
    http_check: HttpCheck = check_http,
    port_check: PortCheck = port_listening,
) -> None:
    ports = (
        (settings.agent_port, settings.agent_service),
        (settings.runtime_port, settings.runtime_service),
    )
    for port, name in ports:
        if not port_check("127.0.0.1", port):
            registry.add("network", PortNotListening(port=port, service=name))

    endpoints = (
        (f"{settings.runtime_url}/api/tags", f"{settings.runtime_service} API"),
        (settings.agent_url, f"{settings.agent_service} web UI"),
    )
    for url, name in endpoints:
        if not http_check(url):
            registry.add("network", EndpointDown(url=url, name=name))


def _owner_of(path: Path) -> str:
    st = path.stat()
    try:
        user = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        user = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return f"{user}:{group}"


def diagnose_filesystem(registry: ProblemRegistry, settings: Settings) -> None:
    for target in settings.ownership_targets():
        path = Path(target.path)
        if not path.is_dir():
            registry.add("filesystem", MissingDirectory(path=target.path))
            continue
        expected = f"{target.owner}:{target.group}"
        actual = _owner_of(path)
        if actual != expected:
            registry.add("filesystem", WrongOwnership(path=target.path, expected=expected, actual=actual))

    for f in expected_files(settings):
        if not Path(f).is_file():
            registry.add("filesystem", MissingFile(path=f))


def expected_files(settings: Settings) -> list[str]:
    return [
        f"{settings.config_dir}/{settings.agent_service}.env",
        f"{settings.install_dir}/launch_{settings.agent_service}.sh",
        f"{settings.systemd_dir}/{settings.runtime_service}.service",
        f"{settings.systemd_dir}/{settings.agent_service}.service",
    ]


def parse_model_list(output: str) -> list[str]:
    """Model names from ``ollama list`` output (header row skipped)."""
    names = []
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0] == "NAME":
            continue
        names.append(parts[0])
    return names


def diagnose_models(registry: ProblemRegistry, settings: Settings, runner: CommandRunner) -> None:
    r = runner.execute(["ollama", "list"], timeout=30, retries=1)
    models = parse_model_list(r.stdout) if r.ok else []
    if settings.model not in models:
        registry.add("models", ModelMissing(model=settings.model, available=models))


def run_diagnostics(
    settings: Settings,
    runner: CommandRunner,
    facts: EnvironmentFacts | None = None,
    http_check: HttpCheck = check_http,
    port_check: PortCheck = port_listening,
) -> ProblemRegistry:
    """Run every diagnostic category and return the findings."""
    registry = ProblemRegistry()
    if facts is not None:
        diagnose_system(registry, facts, settings)
    diagnose_gpu(registry, runner)
    diagnose_services(registry, settings, runner)
    diagnose_network(registry, settings, http_check=http_check, port_check=port_check)
    diagnose_filesystem(registry, settings)
    diagnose_models(registry, settings, runner)
    logger.info("Diagnostics: %d issue(s) found", registry.total)
    return registry


def save_report(
    registry: ProblemRegistry,
    directory: Path,
    facts: EnvironmentFacts | None = None,
) -> Path:
    """Write findings, fixes, and host facts to a timestamped JSON file.

    Raises:
        OSError: the directory cannot be created or written.
    """
    directory.mkdir(parents=True, exist_ok=True)
    now = datetime.now()
    path = directory / f"diagnostic-report-{now:%Y%m%d-%H%M%S}.json"
    data = {
        "generated": now.isoformat(timespec="seconds"),
        "facts": facts.model_dump(mode="json") if facts is not None else None,
        **registry.to_dict(),
    }
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    logger.info("Diagnostic report saved to %s", path)
    return path
