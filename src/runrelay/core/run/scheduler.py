"""DAG scheduling with topological sort.

Takes the :class:`~runrelay.core.run.models.NodeSpec` list of a run and
groups node names into *waves*: nodes in the same wave have no dependency on
each other and are processed concurrently, waves are processed in order.
"""

from __future__ import annotations

from collections import defaultdict, deque

from runrelay.core.run.models import NodeSpec
from runrelay.utils.exceptions import ConfigurationError, CyclicDependencyError
from runrelay.utils.logging import get_logger

logger = get_logger("run.scheduler")


class DagScheduler:
    """Produces execution waves from the node dependency graph (Kahn's algorithm)."""

    def schedule(self, nodes: list[NodeSpec] | tuple[NodeSpec, ...]) -> list[list[str]]:
        """Return the waves of node names for *nodes*.

        Raises :class:`ConfigurationError` for unknown dependencies and
        :class:`CyclicDependencyError` if the graph has a cycle.
        """
        if not nodes:
            return []

        node_map: dict[str, NodeSpec] = {n.name: n for n in nodes}
        self._validate_dependencies(node_map)
        waves = self._topological_sort(list(nodes))

        logger.info("schedule_complete", total_nodes=len(nodes), waves=len(waves))
        return waves

    # ----- Internal helpers -------------------------------------------------

    @staticmethod
    def _validate_dependencies(node_map: dict[str, NodeSpec]) -> None:
        for node in node_map.values():
            for dep in node.depends_on:
                if dep not in node_map:
                    raise ConfigurationError(
                        f"Node '{node.name}' depends on unknown node '{dep}'"
                    )
                if dep == node.name:
                    raise CyclicDependencyError(f"Node '{node.name}' depends on itself")

    @staticmethod
    def _topological_sort(nodes: list[NodeSpec]) -> list[list[str]]:
        in_degree: dict[str, int] = {n.name: 0 for n in nodes}
        dependents: dict[str, list[str]] = defaultdict(list)

        for node in nodes:
            for dep in set(node.depends_on):
                in_degree[node.name] += 1
                dependents[dep].append(node.name)

        current_wave: deque[str] = deque(
            name for name, deg in in_degree.items() if deg == 0
        )

        waves: list[list[str]] = []
        processed = 0

        while current_wave:
            wave = sorted(current_wave)  # deterministic ordering
            waves.append(wave)
            next_wave: deque[str] = deque()
            for name in wave:
                processed += 1
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = next_wave

        if processed != len(nodes):
            stuck = sorted(name for name, deg in in_degree.items() if deg > 0)
            raise CyclicDependencyError(
                f"Cyclic dependency detected among nodes: {', '.join(stuck)}"
            )

        return waves
