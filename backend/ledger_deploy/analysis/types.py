"""Data structures produced by build analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True, frozen=True)
class Reference:
    """A reference literal found inside a text unit."""

    raw: str
    start: int
    end: int
    target: str


@dataclass(slots=True, frozen=True)
class ContentUnit:
    """One file discovered under the build root."""

    path: str
    absolute_path: Path
    mime_type: str
    content_hash: str
    size: int
    dependencies: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()

    def read_bytes(self) -> bytes:
        return self.absolute_path.read_bytes()


@dataclass(slots=True)
class DependencyNode:
    """Graph entry for a unit; ``dependencies`` only names paths present in the graph."""

    unit: ContentUnit
    dependencies: list[str] = field(default_factory=list)
    dependents: set[str] = field(default_factory=set)
    published: bool = False


DependencyGraph = dict[str, DependencyNode]


@dataclass(slots=True)
class BuildAnalysis:
    """Result of analyzing a build directory."""

    root: Path
    units: list[ContentUnit]
    graph: DependencyGraph
    warnings: list[str] = field(default_factory=list)

    def unit(self, path: str) -> ContentUnit:
        return self.graph[path].unit


__all__ = ["BuildAnalysis", "ContentUnit", "DependencyGraph", "DependencyNode", "Reference"]
