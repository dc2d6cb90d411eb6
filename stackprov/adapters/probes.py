"""
Readiness probes — HTTP, service manager, and TCP port checks.

Each ``*_probe`` factory returns a zero-argument callable that answers
"is it ready yet?" with a bool.  Probes never raise: anything that
goes wrong is a ``False``.
"""

from __future__ import annotations

import logging
import socket
import urllib.error
import urllib.request
from enum import Enum
from typing import Callable

from stackprov.adapters.shell.command import CommandRunner

logger = logging.getLogger(__name__)

Probe = Callable[[], bool]


class ServiceState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    NOT_FOUND = "not-found"


# ── HTTP ───────────────────────────────────────────────────────


def check_http(url: str, timeout: float = 5.0) -> bool:
    """Return True when ``url`` answers with a 2xx status."""
    req = urllib.request.Request(url, headers={"User-Agent": "stackprov/0.1"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return 200 <= resp.getcode() < 300
    except (urllib.error.URLError, OSError, ValueError) as exc:
        logger.debug("HTTP probe %s failed: %s", url, exc)
        return False


def http_probe(url: str, timeout: float = 5.0) -> Probe:
    return lambda: check_http(url, timeout=timeout)


# ── Service manager ────────────────────────────────────────────


def service_state(name: str, runner: CommandRunner) -> ServiceState:
    """Ask systemd about a unit.

    ``systemctl is-active`` exits 0 for running units; a unit that is
    missing from ``list-unit-files`` is reported as not-found.
    """
    active = runner.execute(["systemctl", "is-active", "--quiet", name], timeout=10, retries=1)
    if active.ok:
        return ServiceState.ACTIVE

    listed = runner.execute(
        ["systemctl", "list-unit-files", f"{name}.service", "--no-legend"],
        timeout=10,
        retries=1,
    )
    if listed.ok and listed.stdout.strip().startswith(f"{name}.service"):
        return ServiceState.INACTIVE
    return ServiceState.NOT_FOUND


def service_enabled(name: str, runner: CommandRunner) -> bool:
    return runner.execute(["systemctl", "is-enabled", "--quiet", name], timeout=10, retries=1).ok


def service_probe(name: str, runner: CommandRunner) -> Probe:
    return lambda: service_state(name, runner) == ServiceState.ACTIVE


# ── TCP ────────────────────────────────────────────────────────


def port_listening(host: str, port: int, timeout: float = 2.0) -> bool:
    """Return True when something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def command_probe(command: list[str] | str, runner: CommandRunner, timeout: float = 10) -> Probe:
    """Ready when ``command`` exits 0 (e.g. ``docker ps``)."""
    return lambda: runner.execute(command, timeout=timeout, retries=1).ok
