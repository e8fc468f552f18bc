"""Service dependency graph with cycle detection and stable ordering."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from e2e_orchestrator.core.exceptions import ConfigError, DependencyCycleError

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed graph of service names to the names they depend on.

    Insertion order is preserved and used as tie-breaker everywhere, so the
    same graph file always yields the same ordering. Dependencies on names
    not (yet) in the graph are allowed until missing_dependencies() is
    checked.
    """

    def __init__(self) -> None:
        self._deps: dict[str, frozenset[str]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def names(self) -> list[str]:
        return list(self._deps)

    def dependencies(self, name: str) -> frozenset[str]:
        return self._deps[name]

    def dependents(self, name: str) -> list[str]:
        """Names that depend directly on ``name``."""
        return [n for n, deps in self._deps.items() if name in deps]

    def add(self, name: str, depends_on: Iterable[str] = ()) -> None:
        """Insert a node.

        Raises:
            ConfigError: If ``name`` is already present.
            DependencyCycleError: If the node would close a cycle; the graph
                is left unchanged.

        """
        if name in self._deps:
            raise ConfigError(f"Service '{name}' is already registered")
        self._deps[name] = frozenset(depends_on)
        cycle = self.find_cycle()
        if cycle is not None:
            del self._deps[name]
            raise DependencyCycleError(cycle)

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a name path (first name repeated), or None."""
        visiting: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(node: str) -> list[str] | None:
            visiting.append(node)
            on_path.add(node)
            for dep in sorted(self._deps[node]):
                if dep not in self._deps or dep in done:
                    continue
                if dep in on_path:
                    return visiting[visiting.index(dep) :] + [dep]
                cycle = visit(dep)
                if cycle is not None:
                    return cycle
            visiting.pop()
            on_path.discard(node)
            done.add(node)
            return None

        for node in self._deps:
            if node not in done:
                cycle = visit(node)
                if cycle is not None:
                    return cycle
        return None

    def missing_dependencies(self) -> dict[str, list[str]]:
        """Map each node to its dependencies that are not in the graph."""
        missing = {}
        for name, deps in self._deps.items():
            unknown = sorted(d for d in deps if d not in self._deps)
            if unknown:
                missing[name] = unknown
        return missing

    def topological_order(self) -> list[str]:
        """Dependencies-first ordering, stable by insertion order.

        Raises:
            ConfigError: If a dependency is not in the graph.
            DependencyCycleError: If the graph has a cycle.

        """
        missing = self.missing_dependencies()
        if missing:
            details = "; ".join(f"{n} -> {', '.join(d)}" for n, d in missing.items())
            raise ConfigError(f"Unknown dependencies: {details}")

        cycle = self.find_cycle()
        if cycle is not None:
            raise DependencyCycleError(cycle)

        remaining = {name: set(deps) for name, deps in self._deps.items()}
        order: list[str] = []
        while remaining:
            ready = [n for n, deps in remaining.items() if not deps]
            for name in ready:
                del remaining[name]
                order.append(name)
            for deps in remaining.values():
                deps.difference_update(ready)
        return order
