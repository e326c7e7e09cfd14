"""
Dependency ordering for calculated measures.

topological_order() is a depth-first visit with a "visiting" marker. A
definition that can reach itself through dependencies inside the set is a
cycle member: with CyclePolicy.SKIP it is left out of the order and
reported, with CyclePolicy.RAISE a CycleDetectedError is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .config import CyclePolicy
from .errors import CycleDetectedError
from .models import MeasureDefinition

logger = logging.getLogger(__name__)


@dataclass
class DependencyOrder:
    """Definitions in evaluation order plus the names left out because of cycles."""
    ordered: List[MeasureDefinition] = field(default_factory=list)
    cyclic: List[str] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)


def _edges(definitions: Mapping[str, MeasureDefinition]) -> Dict[str, List[str]]:
    return {
        name: [dep for dep in definition.base_dependencies if dep in definitions]
        for name, definition in definitions.items()
    }


def _cycle_members(edges: Mapping[str, Sequence[str]]) -> Set[str]:
    """Names that can reach themselves."""
    members: Set[str] = set()
    for start in edges:
        stack = list(edges[start])
        seen: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == start:
                members.add(start)
                break
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edges.get(current, ()))
    return members


def topological_order(
    definitions: Iterable[MeasureDefinition],
    on_cycle: CyclePolicy = CyclePolicy.SKIP,
) -> DependencyOrder:
    """
    Order definitions so each one follows the definitions (in the same set)
    it depends on. Dependencies outside the set are ignored for ordering.
    """
    by_name: Dict[str, MeasureDefinition] = {}
    for definition in definitions:
        by_name.setdefault(definition.name, definition)

    edges = _edges(by_name)
    result = DependencyOrder()
    visited: Set[str] = set()
    visiting: List[str] = []
    postorder: List[str] = []

    def visit(name: str) -> None:
        if name in visited:
            return
        if name in visiting:
            cycle = visiting[visiting.index(name):] + [name]
            if on_cycle == CyclePolicy.RAISE:
                raise CycleDetectedError(cycle)
            result.cycles.append(cycle)
            logger.warning(f"Circular dependency detected: {' -> '.join(cycle)}")
            return

        visiting.append(name)
        for dep in edges[name]:
            visit(dep)
        visiting.pop()
        visited.add(name)
        postorder.append(name)

    for name in by_name:
        visit(name)

    cyclic = _cycle_members(edges) if result.cycles else set()
    result.ordered = [by_name[name] for name in postorder if name not in cyclic]
    result.cyclic = [name for name in postorder if name in cyclic]
    if cyclic:
        logger.warning(f"Skipping calculated measures in dependency cycles: {', '.join(result.cyclic)}")
    return result


def detect_circular_dependencies(
    measure_name: str,
    dependencies: Sequence[str],
    all_dependencies: Mapping[str, Sequence[str]],
) -> Optional[List[str]]:
    """
    Check whether giving ``measure_name`` the dependency list
    ``dependencies`` would close a loop.

    Args:
        measure_name: The calculated measure being created or edited
        dependencies: Its proposed base dependency names
        all_dependencies: Base dependency names of every other calculated measure

    Returns:
        The cycle path (e.g. ["a", "b", "a"]) or None.
    """
    graph: Dict[str, Sequence[str]] = dict(all_dependencies)
    graph[measure_name] = dependencies

    path: List[str] = []
    on_path: Set[str] = set()
    done: Set[str] = set()

    def dfs(name: str) -> Optional[List[str]]:
        path.append(name)
        on_path.add(name)
        for dep in graph.get(name, ()):
            if dep in on_path:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                found = dfs(dep)
                if found:
                    return found
        path.pop()
        on_path.discard(name)
        done.add(name)
        return None

    return dfs(measure_name)
