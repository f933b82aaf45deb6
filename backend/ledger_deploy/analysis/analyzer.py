"""Build directory analysis: fingerprint files and map their references."""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path
from typing import Iterable, Iterator

from ledger_deploy.analysis.extractors import ExtractorRegistry
from ledger_deploy.analysis.mime import content_type_for
from ledger_deploy.analysis.types import BuildAnalysis, ContentUnit, DependencyGraph, DependencyNode
from ledger_deploy.core.errors import AnalysisError
from ledger_deploy.core.logging import get_logger
from ledger_deploy.utils.hashing import sha256_bytes

logger = get_logger(__name__)

EXCLUDED_PATTERNS = (
    ".env*",
    "deployment-manifest*.json",
    ".git*",
    ".DS_Store",
    "Thumbs.db",
    "node_modules",
    ".vscode",
    ".idea",
)


def _is_excluded(name: str) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in EXCLUDED_PATTERNS)


def scan_directory(root: Path) -> Iterator[str]:
    """Yield build-root-relative POSIX paths for every regular file, in sorted order."""
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _is_excluded(d))
        base = Path(current)
        for filename in sorted(filenames):
            if _is_excluded(filename):
                continue
            candidate = base / filename
            if candidate.is_symlink() and not candidate.is_file():
                continue
            if not candidate.is_file():
                continue
            yield candidate.relative_to(root).as_posix()


def analyze_file(root: Path, relative_path: str, registry: ExtractorRegistry | None = None) -> ContentUnit:
    """Read one file, fingerprint its untouched bytes, and extract references."""
    registry = registry or ExtractorRegistry()
    absolute = root / relative_path
    try:
        data = absolute.read_bytes()
    except OSError as exc:
        raise AnalysisError(f"Failed to read {relative_path}: {exc}") from exc

    references = tuple(registry.extract(data, relative_path))
    seen: dict[str, None] = {}
    for ref in references:
        if ref.target != relative_path:
            seen.setdefault(ref.target, None)
    return ContentUnit(
        path=relative_path,
        absolute_path=absolute,
        mime_type=content_type_for(relative_path),
        content_hash=sha256_bytes(data),
        size=len(data),
        dependencies=tuple(seen),
        references=references,
    )


def build_dependency_graph(units: Iterable[ContentUnit]) -> DependencyGraph:
    """Link units by reference, dropping edges whose target was not analyzed."""
    graph: DependencyGraph = {unit.path: DependencyNode(unit=unit) for unit in units}
    for path, node in graph.items():
        for dep in node.unit.dependencies:
            if dep not in graph:
                logger.debug("Dropping dangling reference %s -> %s", path, dep)
                continue
            node.dependencies.append(dep)
            graph[dep].dependents.add(path)
    return graph


def analyze_build_directory(root: Path, registry: ExtractorRegistry | None = None) -> BuildAnalysis:
    """Analyze every file under ``root``; unreadable files become warnings."""
    root = root.expanduser().resolve()
    if not root.is_dir():
        raise AnalysisError(f"Build directory not found: {root}")
    registry = registry or ExtractorRegistry()
    units: list[ContentUnit] = []
    warnings: list[str] = []
    for relative in scan_directory(root):
        try:
            units.append(analyze_file(root, relative, registry))
        except AnalysisError as exc:
            logger.warning("Skipping %s: %s", relative, exc)
            warnings.append(str(exc))
    graph = build_dependency_graph(units)
    logger.info("Analyzed %s files under %s", len(units), root)
    return BuildAnalysis(root=root, units=units, graph=graph, warnings=warnings)


__all__ = [
    "EXCLUDED_PATTERNS",
    "analyze_build_directory",
    "analyze_file",
    "build_dependency_graph",
    "scan_directory",
]
