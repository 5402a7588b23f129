"""
Dependency ordering of entity types.

A DependencyGraph is built from migration tasks (or any mapping of entity
type to prerequisites) and sorted into levels: every entity in a level
depends only on entities in earlier levels, so the entities of one level can
run concurrently. A cycle is fatal and reported before any work starts.

Example:
    >>> graph = DependencyGraph.from_tasks([
    ...     MigrationTask("patients", dependencies=("offices", "doctors")),
    ...     MigrationTask("offices"),
    ...     MigrationTask("doctors", dependencies=("offices",)),
    ... ])
    >>> graph.levels()
    [['offices'], ['doctors'], ['patients']]
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from diffmigrate.exceptions import CyclicDependencyError
from diffmigrate.models import MigrationTask, TaskPriority


class DependencyGraph:
    """
    Directed graph of entity type -> prerequisite entity types.

    Args:
        dependencies: Prerequisites per entity type. Prerequisites that are
            not themselves keys are ignored (they are outside the run).
        priorities: Optional priority per entity, used to order entities
            inside one level.
    """

    def __init__(
        self,
        dependencies: Mapping[str, Iterable[str]],
        priorities: Mapping[str, TaskPriority] | None = None,
    ) -> None:
        nodes = set(dependencies)
        self._dependencies: dict[str, tuple[str, ...]] = {
            name: tuple(dict.fromkeys(dep for dep in deps if dep in nodes))
            for name, deps in dependencies.items()
        }
        self._priorities = dict(priorities or {})

    @classmethod
    def from_tasks(cls, tasks: Iterable[MigrationTask]) -> DependencyGraph:
        """Build the graph declared by a set of migration tasks."""
        tasks = list(tasks)
        return cls(
            {task.entity_type: task.dependencies for task in tasks},
            {task.entity_type: task.priority for task in tasks},
        )

    @property
    def nodes(self) -> list[str]:
        return list(self._dependencies)

    def dependencies_of(self, entity_type: str) -> tuple[str, ...]:
        return self._dependencies.get(entity_type, ())

    def dependents_of(self, entity_type: str) -> list[str]:
        return [name for name, deps in self._dependencies.items() if entity_type in deps]

    def _sort_key(self, entity_type: str) -> tuple[int, str]:
        priority = self._priorities.get(entity_type, TaskPriority.MEDIUM)
        return (priority.rank, entity_type)

    def find_cycle(self) -> list[str] | None:
        """
        Find one dependency cycle.

        Returns:
            Entity types along the cycle with the first repeated at the end,
            or None if the graph is acyclic.
        """
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(node: str) -> list[str] | None:
            visited.add(node)
            stack.append(node)
            on_stack.add(node)
            for dep in self._dependencies[node]:
                if dep in on_stack:
                    return stack[stack.index(dep) :] + [dep]
                if dep not in visited:
                    cycle = visit(dep)
                    if cycle is not None:
                        return cycle
            stack.pop()
            on_stack.discard(node)
            return None

        for node in sorted(self._dependencies):
            if node not in visited:
                cycle = visit(node)
                if cycle is not None:
                    return cycle
        return None

    def levels(self) -> list[list[str]]:
        """
        Sort the graph into dependency levels (Kahn's algorithm).

        Returns:
            Levels in execution order; entities inside a level are ordered by
            priority, then name.

        Raises:
            CyclicDependencyError: If the dependencies contain a cycle.
        """
        remaining = {name: set(deps) for name, deps in self._dependencies.items()}
        levels: list[list[str]] = []

        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                cycle = self.find_cycle() or sorted(remaining)
                raise CyclicDependencyError(cycle)
            ready.sort(key=self._sort_key)
            levels.append(ready)
            for name in ready:
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)

        return levels

    def order(self) -> list[str]:
        """Flattened topological order."""
        return [name for level in self.levels() for name in level]

    def validate(self) -> None:
        """
        Raises:
            CyclicDependencyError: If the dependencies contain a cycle.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)


__all__ = ["DependencyGraph"]
