"""
Step dependency graph — validation and execution order (pure).

No I/O, no subprocess.
"""

from __future__ import annotations

import heapq

from stackprov.core.errors import PlanError
from stackprov.core.models.step import Step


def validate_dag(steps: list[Step]) -> list[str]:
    """Validate the step dependency DAG.

    Checks for:
    - Duplicate step IDs
    - References to non-existent step IDs
    - Cycles

    Returns:
        List of error strings (empty = valid).
    """
    errors: list[str] = []
    ids = {s.id for s in steps}

    seen: set[str] = set()
    for s in steps:
        if s.id in seen:
            errors.append(f"Duplicate step ID: {s.id}")
        seen.add(s.id)

    for s in steps:
        for dep in s.depends_on:
            if dep not in ids:
                errors.append(f"Step '{s.id}' depends on unknown step '{dep}'")
            elif dep == s.id:
                errors.append(f"Step '{s.id}' depends on itself")

    if errors:
        return errors

    ordered = set(_kahn(steps))
    if len(ordered) < len(steps):
        stuck = [s.id for s in steps if s.id not in ordered]
        errors.append("Dependency cycle detected among steps: " + ", ".join(stuck))

    return errors


def topological_order(steps: list[Step]) -> list[Step]:
    """Return steps in execution order.

    Dependencies always come first; among steps that are ready at the
    same time, the one declared earlier wins.

    Raises:
        PlanError: The graph has duplicates, unknown ids, or a cycle.
    """
    errors = validate_dag(steps)
    if errors:
        raise PlanError(errors[0], errors)

    by_id = {s.id: s for s in steps}
    return [by_id[sid] for sid in _kahn(steps)]


def _kahn(steps: list[Step]) -> list[str]:
    """Kahn's algorithm with a declaration-index heap as the ready queue."""
    index = {s.id: i for i, s in enumerate(steps)}
    in_degree = {s.id: len(set(s.depends_on)) for s in steps}
    successors: dict[str, list[str]] = {s.id: [] for s in steps}
    for s in steps:
        for dep in set(s.depends_on):
            if dep in successors:
                successors[dep].append(s.id)

    ready = [index[sid] for sid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        sid = steps[heapq.heappop(ready)].id
        order.append(sid)
        for succ in successors[sid]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, index[succ])

    return order


def with_dependencies(steps: list[Step], selected: set[str]) -> list[Step]:
    """Restrict a plan to ``selected`` plus everything they transitively need.

    Declaration order is preserved.
    """
    by_id = {s.id: s for s in steps}
    keep: set[str] = set()
    stack = [sid for sid in selected if sid in by_id]
    while stack:
        sid = stack.pop()
        if sid in keep:
            continue
        keep.add(sid)
        stack.extend(d for d in by_id[sid].depends_on if d in by_id)
    return [s for s in steps if s.id in keep]


def select_category(steps: list[Step], category: str) -> list[Step]:
    """Steps in ``category`` plus their transitive dependencies.

    Raises:
        PlanError: No step belongs to the category.
    """
    selected = {s.id for s in steps if s.category == category}
    if not selected:
        known = sorted({s.category for s in steps if s.category})
        raise PlanError(f"Unknown category '{category}'. Known: {', '.join(known) or 'none'}")
    return with_dependencies(steps, selected)
