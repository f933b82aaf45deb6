"""Decide which units can reuse a previous publish."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from ledger_deploy.analysis.types import DependencyGraph
from ledger_deploy.core.logging import get_logger
from ledger_deploy.models.records import PublishedUnit
from ledger_deploy.utils.hashing import sha256_joined

logger = get_logger(__name__)


def dependency_fingerprint(dependencies: Iterable[str], access_map: Mapping[str, str]) -> str | None:
    """Hash the sorted access paths of resolved dependencies; ``None`` without dependencies."""
    dependencies = list(dependencies)
    if not dependencies:
        return None
    resolved = sorted(access_map[dep] for dep in dependencies if dep in access_map)
    return sha256_joined(resolved)


def can_reuse(previous: PublishedUnit | None, content_hash: str, dependency_hash: str | None) -> bool:
    if previous is None or previous.content_hash != content_hash:
        return False
    if dependency_hash is None:
        return True
    return previous.dependency_hash == dependency_hash


@dataclass(slots=True, frozen=True)
class CacheDecision:
    path: str
    reusable: bool
    dependency_hash: str | None
    previous: PublishedUnit | None = None


class CacheEvaluator:
    """Reuse decisions against the units recorded by earlier deployments."""

    def __init__(self, previous: Mapping[str, PublishedUnit] | None = None) -> None:
        self.previous: dict[str, PublishedUnit] = dict(previous or {})

    @property
    def has_cache(self) -> bool:
        return bool(self.previous)

    def evaluate(
        self,
        path: str,
        content_hash: str,
        dependencies: Sequence[str],
        access_map: Mapping[str, str],
    ) -> CacheDecision:
        """Judge one unit; every dependency must already be in ``access_map``."""
        dep_hash = dependency_fingerprint(dependencies, access_map)
        previous = self.previous.get(path)
        reusable = can_reuse(previous, content_hash, dep_hash)
        if previous is not None and not reusable:
            logger.debug("Cache miss for %s", path)
        return CacheDecision(path=path, reusable=reusable, dependency_hash=dep_hash, previous=previous)

    @staticmethod
    def reuse(decision: CacheDecision) -> PublishedUnit:
        """Return the prior publish marked as cached; chunk manifests carry over untouched."""
        if decision.previous is None:
            raise ValueError(f"No previous publish recorded for {decision.path}")
        return decision.previous.model_copy(update={"cached": True})

    def preview(
        self,
        graph: DependencyGraph,
        waves: Sequence[Sequence[str]],
        extra_dependencies: Mapping[str, Sequence[str]] | None = None,
        seed: Mapping[str, str] | None = None,
    ) -> tuple[list[str], list[str]]:
        """Predict cached and new paths before publishing.

        Units that will be republished get a placeholder access path, so
        anything depending on them is predicted as new too. ``seed`` supplies
        access paths for generated units that are not part of the graph.
        """
        extra_dependencies = extra_dependencies or {}
        access_map: dict[str, str] = dict(seed or {})
        cached: list[str] = []
        fresh: list[str] = []
        for wave in waves:
            for path in wave:
                node = graph[path]
                dependencies = list(node.dependencies) + list(extra_dependencies.get(path, ()))
                decision = self.evaluate(path, node.unit.content_hash, dependencies, access_map)
                if decision.reusable and decision.previous is not None:
                    cached.append(path)
                    access_map[path] = decision.previous.url_path
                else:
                    fresh.append(path)
                    access_map[path] = f"pending:{path}"
        return cached, fresh


__all__ = ["CacheDecision", "CacheEvaluator", "can_reuse", "dependency_fingerprint"]
