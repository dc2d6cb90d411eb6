"""
Host detection — OS, CPU, memory, disk, GPU, virtualization.

Read-only probes gathered once before a run into EnvironmentFacts.
Every probe is best-effort: a probe that cannot answer leaves its
fact as ``None`` instead of failing the run.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from pathlib import Path

from stackprov.adapters.shell.command import CommandRunner
from stackprov.core.models.context import EnvironmentFacts
from stackprov.core.models.findings import ResourceLow
from stackprov.core.models.settings import Requirements

logger = logging.getLogger(__name__)

_GIB = 1024 ** 3


# ── Parsers ────────────────────────────────────────────────────


def parse_os_release(text: str) -> dict[str, str]:
    """Parse /etc/os-release ``KEY=value`` lines."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        result[key.strip()] = value.strip().strip('"').strip("'")
    return result


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse /proc/meminfo into bytes per key."""
    result: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].endswith(":"):
            try:
                value = int(parts[1])
            except ValueError:
                continue
            unit = parts[2].lower() if len(parts) > 2 else ""
            result[parts[0][:-1]] = value * 1024 if unit == "kb" else value
    return result


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def _gb(value: int | None) -> float | None:
    return round(value / _GIB, 1) if value is not None else None


# ── Probes ─────────────────────────────────────────────────────


def detect_gpu(runner: CommandRunner) -> tuple[bool, str | None]:
    """An NVIDIA GPU counts only when ``nvidia-smi`` actually works."""
    if not shutil.which("nvidia-smi"):
        return False, None
    r = runner.execute(
        ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader"],
        timeout=10,
        retries=1,
    )
    if not r.ok or not r.stdout.strip():
        logger.warning("NVIDIA drivers installed but not functional")
        return False, None
    return True, r.stdout.strip().splitlines()[0]


def detect_virtualization(runner: CommandRunner) -> str | None:
    if not shutil.which("systemd-detect-virt"):
        return None
    r = runner.execute(["systemd-detect-virt"], timeout=5, retries=1)
    value = r.stdout.strip()
    if not r.ok or value in ("", "none"):
        return None
    return value


def gather_facts(
    runner: CommandRunner,
    install_base: str = "/opt",
    os_release: Path = Path("/etc/os-release"),
    meminfo: Path = Path("/proc/meminfo"),
    detect_hardware: bool = True,
) -> EnvironmentFacts:
    """Collect host facts for the RunContext.

    Args:
        runner: Used for ``nvidia-smi`` and ``systemd-detect-virt``.
        install_base: Directory whose filesystem must hold the install.
        os_release: Path to the os-release file.
        meminfo: Path to the meminfo file.
        detect_hardware: Skip GPU / virtualization probes when False.
    """
    facts: dict = {
        "arch": platform.machine() or None,
        "cpu_cores": os.cpu_count(),
        "is_root": hasattr(os, "geteuid") and os.geteuid() == 0,
    }

    text = _read(os_release)
    if text:
        info = parse_os_release(text)
        facts["os_id"] = info.get("ID")
        facts["os_version"] = info.get("VERSION_ID")
        facts["os_pretty_name"] = info.get("PRETTY_NAME")

    text = _read(meminfo)
    if text:
        mem = parse_meminfo(text)
        facts["memory_gb"] = _gb(mem.get("MemTotal"))
        facts["memory_available_gb"] = _gb(mem.get("MemAvailable"))
        facts["swap_gb"] = _gb(mem.get("SwapTotal"))

    base = Path(install_base)
    while not base.exists() and base != base.parent:
        base = base.parent
    try:
        usage = shutil.disk_usage(base)
        facts["disk_free_gb"] = _gb(usage.free)
        facts["disk_usage_percent"] = round(usage.used * 100 / usage.total, 1) if usage.total else None
    except OSError as e:
        logger.debug("disk_usage(%s) failed: %s", base, e)

    if detect_hardware:
        facts["gpu_present"], facts["gpu_name"] = detect_gpu(runner)
        facts["virtualization"] = detect_virtualization(runner)

    result = EnvironmentFacts(**facts)
    logger.info(
        "Host: %s %s, %s cores, %s GB RAM, %s GB free, GPU=%s",
        result.os_id, result.os_version, result.cpu_cores,
        result.memory_gb, result.disk_free_gb, result.gpu_present,
    )
    return result


def check_requirements(facts: EnvironmentFacts, req: Requirements) -> list[ResourceLow]:
    """Compare facts against minimum requirements; unknown facts pass."""
    findings: list[ResourceLow] = []
    if facts.cpu_cores is not None and facts.cpu_cores < req.min_cpu_cores:
        findings.append(ResourceLow(resource="cpu_cores", actual=facts.cpu_cores, required=req.min_cpu_cores))
    # integer GB comparison, as `free -g` reports
    if facts.memory_gb is not None and int(facts.memory_gb) < req.min_memory_gb:
        findings.append(ResourceLow(resource="memory_gb", actual=facts.memory_gb, required=req.min_memory_gb))
    if facts.memory_available_gb is not None and int(facts.memory_available_gb) < req.min_free_memory_gb:
        findings.append(ResourceLow(
            resource="free_memory_gb", actual=facts.memory_available_gb, required=req.min_free_memory_gb,
        ))
    if facts.disk_free_gb is not None and int(facts.disk_free_gb) < req.min_disk_gb:
        findings.append(ResourceLow(resource="disk_free_gb", actual=facts.disk_free_gb, required=req.min_disk_gb))
    if facts.disk_usage_percent is not None and facts.disk_usage_percent > req.max_disk_usage_percent:
        findings.append(ResourceLow(
            resource="disk_usage_percent", actual=facts.disk_usage_percent, required=req.max_disk_usage_percent,
        ))
    return findings
