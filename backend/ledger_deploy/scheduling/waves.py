"""Dependency ordering and wave grouping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Iterator

from ledger_deploy.analysis.types import DependencyGraph
from ledger_deploy.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class WaveSet:
    """Ordered groups of paths that may be published concurrently."""

    waves: list[list[str]] = field(default_factory=list)
    wave_of: dict[str, int] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)
    deferred_from: int | None = None

    def __len__(self) -> int:
        return len(self.waves)

    def __iter__(self) -> Iterator[list[str]]:
        return iter(self.waves)


def topological_order(graph: DependencyGraph) -> tuple[list[str], list[list[str]]]:
    """Return a dependencies-first order plus the cycles broken along the way.

    Traversal is an explicit-stack depth-first search. A dependency that is
    still on the stack is a back-edge; it is treated as already satisfied and
    the stack slice from that node onwards is reported as a cycle.
    """
    order: list[str] = []
    visited: set[str] = set()
    visiting: set[str] = set()
    cycles: list[list[str]] = []

    for root in sorted(graph):
        if root in visited:
            continue
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(graph[root].dependencies))]
        path: list[str] = [root]
        visiting.add(root)
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if dep in visited:
                    continue
                if dep in visiting:
                    cycles.append(path[path.index(dep):])
                    continue
                visiting.add(dep)
                path.append(dep)
                stack.append((dep, iter(graph[dep].dependencies)))
                advanced = True
                break
            if advanced:
                continue
            stack.pop()
            path.pop()
            visiting.discard(node)
            visited.add(node)
            order.append(node)
    return order, cycles


def compute_waves(graph: DependencyGraph, deferred: Collection[str] = ()) -> WaveSet:
    """Group the graph into waves; a unit lands one wave after its latest dependency.

    ``deferred`` paths (and anything that depends on them) are pushed after
    every other wave, and ``deferred_from`` marks the first such wave.
    """
    order, cycles = topological_order(graph)
    for members in cycles:
        logger.warning("Dependency cycle broken at %s: %s", members[0], " -> ".join(members + [members[0]]))

    tainted: set[str] = set()
    for path in order:
        if path in deferred or any(dep in tainted for dep in graph[path].dependencies):
            tainted.add(path)

    wave_of = _place(graph, order, tainted=set(), floor=0)
    deferred_from: int | None = None
    if tainted:
        deferred_from = max((wave_of[p] for p in order if p not in tainted), default=-1) + 1
        wave_of = _place(graph, order, tainted=tainted, floor=deferred_from)

    waves: list[list[str]] = [[] for _ in range(max(wave_of.values(), default=-1) + 1)]
    for path in order:
        waves[wave_of[path]].append(path)
    waves = [sorted(wave) for wave in waves if wave]
    compact = {path: index for index, wave in enumerate(waves) for path in wave}
    if deferred_from is not None:
        deferred_from = min(compact[p] for p in tainted)
    return WaveSet(waves=waves, wave_of=compact, cycles=cycles, deferred_from=deferred_from)


def _place(graph: DependencyGraph, order: list[str], tainted: set[str], floor: int) -> dict[str, int]:
    # Only dependencies earlier in ``order`` count; later ones are cycle back-edges.
    wave_of: dict[str, int] = {}
    for path in order:
        placed = [wave_of[dep] + 1 for dep in graph[path].dependencies if dep in wave_of]
        if path in tainted:
            placed.append(floor)
        wave_of[path] = max(placed, default=0)
    return wave_of


__all__ = ["WaveSet", "compute_waves", "topological_order"]
