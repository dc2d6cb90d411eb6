"""
The ``verify`` plan — post-install checks, nothing mutating.

Each step always runs (not idempotent) so a re-run re-checks the
live system instead of trusting the ledger.
"""

from __future__ import annotations

from stackprov.adapters.probes import http_probe, service_probe
from stackprov.adapters.shell.command import CommandRunner
from stackprov.core.detection.diagnostics import parse_model_list
from stackprov.core.engine.health import HealthChecker
from stackprov.core.errors import StepExecutionError
from stackprov.core.models.context import RunContext
from stackprov.core.models.settings import Settings
from stackprov.core.models.step import Step


def build_verify_plan(
    settings: Settings,
    runner: CommandRunner,
    health: HealthChecker,
    skip_validation: bool = False,
) -> list[Step]:
    s = settings
    # short grace period: services should already be up
    wait = min(s.health.timeout, 10.0)

    def ready(step_id: str, probe, what: str) -> None:
        if not health.wait_until_ready(probe, timeout=wait, poll_interval=s.health.poll_interval, name=what):
            raise StepExecutionError(step_id, f"{what} is not ready")

    def services(ctx: RunContext) -> None:
        down = [
            name for name in (s.runtime_service, s.agent_service)
            if not service_probe(name, runner)()
        ]
        if down:
            raise StepExecutionError("services", "not active: " + ", ".join(down))

    def runtime_api(ctx: RunContext) -> None:
        ready("runtime_api", http_probe(f"{s.runtime_url}/api/tags"), f"{s.runtime_service} API")

    def agent_ui(ctx: RunContext) -> None:
        ready("agent_ui", http_probe(s.agent_url), f"{s.agent_service} web UI")

    def model(ctx: RunContext) -> None:
        r = runner.execute(["ollama", "list"], timeout=30, retries=1)
        if not r.ok:
            raise StepExecutionError("model", f"ollama list failed: {r.stderr.strip() or r.exit_code}")
        if s.model not in parse_model_list(r.stdout):
            raise StepExecutionError("model", f"model {s.model} not available")

    common = dict(idempotent=False, mutating=False, category="validate")
    return [
        Step("services", services, description="runtime and agent services active", **common),
        Step("runtime_api", runtime_api, ("services",), description="runtime API answers", **common),
        Step("agent_ui", agent_ui, ("services",), description="agent web UI answers", **common),
        Step("model", model, ("runtime_api",), description=f"{s.model} is pulled", **common),
    ]
