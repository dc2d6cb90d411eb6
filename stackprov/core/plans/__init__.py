"""
Plan registry — named builders that turn Settings into Steps.

Usage:
    info = get_plan("ai-stack")
    steps = info.build(settings, runner, health)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from stackprov.core.errors import PlanError
from stackprov.core.models.step import Step
from stackprov.core.plans.ai_stack import build_ai_stack_plan
from stackprov.core.plans.verify import build_verify_plan

PlanBuilder = Callable[..., list[Step]]


@dataclass(frozen=True)
class PlanInfo:
    name: str
    description: str
    build: PlanBuilder


PLANS: dict[str, PlanInfo] = {}


def register_plan(name: str, description: str, build: PlanBuilder) -> PlanInfo:
    """Add (or replace) a named plan."""
    info = PlanInfo(name=name, description=description, build=build)
    PLANS[name] = info
    return info


def get_plan(name: str) -> PlanInfo:
    try:
        return PLANS[name]
    except KeyError:
        known = ", ".join(sorted(PLANS)) or "none"
        raise PlanError(f"Unknown plan: {name!r} (available: {known})") from None


def list_plans() -> list[PlanInfo]:
    return [PLANS[name] for name in sorted(PLANS)]


register_plan(
    "ai-stack",
    "Install Docker, the Ollama runtime, a model, and the agent web UI",
    build_ai_stack_plan,
)
register_plan(
    "verify",
    "Check that an installed stack is up (read-only)",
    build_verify_plan,
)
