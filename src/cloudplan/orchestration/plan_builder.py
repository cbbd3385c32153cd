"""Plan builder: validates resource specs and orders them by dependency."""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List

import structlog

from cloudplan.core.errors import ConfigurationError
from cloudplan.domain.models import ProvisioningPlan, ResourceSpec

logger = structlog.get_logger()


class PlanBuilder:
    """Builds a ProvisioningPlan from resource specs.

    Pure validation, no provider calls. Independent resources keep their
    declaration order so that runs are deterministic and diffable.
    """

    def build(self, specs: Iterable[ResourceSpec], name: str = "plan") -> ProvisioningPlan:
        declared = list(specs)
        position: Dict[str, int] = {}
        for index, spec in enumerate(declared):
            if spec.id in position:
                raise ConfigurationError("Duplicate resource id", {"resource": spec.id})
            position[spec.id] = index

        for spec in declared:
            if spec.id in spec.depends_on:
                raise ConfigurationError("Resource depends on itself", {"resource": spec.id})
            unknown = sorted(dep for dep in spec.depends_on if dep not in position)
            if unknown:
                raise ConfigurationError(
                    "Unknown dependency",
                    {"resource": spec.id, "unknown": ", ".join(unknown)},
                )

        ordered = self._topological_order(declared, position)
        logger.debug("plan_built", plan=name, order=[spec.id for spec in ordered])
        return ProvisioningPlan(resources=tuple(ordered), name=name)

    def _topological_order(
        self, declared: List[ResourceSpec], position: Dict[str, int]
    ) -> List[ResourceSpec]:
        remaining = {spec.id: len(spec.depends_on) for spec in declared}
        dependents: Dict[str, List[str]] = {spec.id: [] for spec in declared}
        for spec in declared:
            for dep in spec.depends_on:
                dependents[dep].append(spec.id)

        # Kahn's algorithm; the heap yields the earliest-declared ready resource.
        ready = [position[rid] for rid, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        ordered: List[ResourceSpec] = []
        while ready:
            spec = declared[heapq.heappop(ready)]
            ordered.append(spec)
            for dependent in dependents[spec.id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, position[dependent])

        if len(ordered) != len(declared):
            cycle = _find_cycle(declared, {spec.id for spec in ordered})
            raise ConfigurationError("Dependency cycle detected", {"cycle": " -> ".join(cycle)})
        return ordered


def _find_cycle(declared: List[ResourceSpec], placed: set[str]) -> List[str]:
    """Return one cycle among the resources Kahn's algorithm could not place."""
    depends_on = {spec.id: sorted(spec.depends_on - placed) for spec in declared if spec.id not in placed}
    # Every unplaced resource has an unplaced dependency, so walking edges must revisit a node.
    path: List[str] = []
    seen: Dict[str, int] = {}
    current = next(spec.id for spec in declared if spec.id not in placed)
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = depends_on[current][0]
    return path[seen[current]:] + [current]
