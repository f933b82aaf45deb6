"""Deployment history persistence."""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from pydantic import ValidationError

from ledger_deploy.core.errors import CacheError
from ledger_deploy.core.logging import get_logger
from ledger_deploy.models.records import (
    ChunkManifest,
    DeploymentHistory,
    DeploymentRecord,
    PublishedUnit,
    parse_cached_ref,
)

logger = get_logger(__name__)


def load_history(path: Path) -> DeploymentHistory | None:
    """Read the history file; a legacy single-record file is upgraded in memory.

    Returns ``None`` when the file does not exist and raises ``CacheError``
    when it cannot be parsed.
    """
    if not path.exists():
        return None
    try:
        raw = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise CacheError(f"Could not read deployment history {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise CacheError(f"Deployment history {path} is not a JSON object")
    try:
        if "deployments" in raw:
            return DeploymentHistory.model_validate(raw)
        if "entryPoint" in raw:
            record = DeploymentRecord.model_validate(raw)
            logger.info("Upgrading single-record manifest %s to a deployment history", path)
            return DeploymentHistory(total_deployments=1, deployments=[record])
    except ValidationError as exc:
        raise CacheError(f"Malformed deployment history {path}: {exc}") from exc
    raise CacheError(f"Unrecognized deployment history format in {path}")


def set_aside(path: Path) -> Path | None:
    """Rename an unusable history file so a fresh one can take its place."""
    if not path.exists():
        return None
    backup = path.with_name(path.name + ".malformed")
    os.replace(path, backup)
    logger.warning("Moved unusable deployment history to %s", backup)
    return backup


def save_history(path: Path, history: DeploymentHistory) -> None:
    """Write the history atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(history.to_json())
    os.replace(tmp, path)


def append_record(
    history: DeploymentHistory | None,
    record: DeploymentRecord,
    project_name: str | None = None,
) -> DeploymentHistory:
    """Return the history with ``record`` appended; earlier records are untouched."""
    history = history or DeploymentHistory()
    history.deployments.append(record)
    history.total_deployments = len(history.deployments)
    if project_name and not history.project_name:
        history.project_name = project_name
    return history


def previous_publish_map(history: DeploymentHistory | None) -> dict[str, PublishedUnit]:
    """Latest known publish for every path, replaying records oldest to newest.

    Cached references (``path::*::outpoint``) resolve against full entries
    found anywhere in the history.
    """
    if history is None:
        return {}
    by_outpoint: dict[str, PublishedUnit] = {}
    for record in history.deployments:
        for unit in record.files:
            by_outpoint[unit.outpoint] = unit

    latest: dict[str, PublishedUnit] = {}
    for record in history.deployments:
        for unit in record.files:
            latest[unit.original_path] = unit
        for ref in record.cached_files:
            try:
                path, outpoint = parse_cached_ref(ref)
            except ValueError:
                logger.warning("Ignoring malformed cached file reference %r", ref)
                continue
            unit = by_outpoint.get(outpoint)
            if unit is None:
                logger.debug("Cached reference %s has no full entry in history", ref)
                continue
            latest[path] = unit
    return latest


def settled_chunk_map(history: DeploymentHistory | None) -> dict[str, ChunkManifest]:
    """Chunks left on the ledger by aborted runs, newest record winning per path."""
    settled: dict[str, ChunkManifest] = {}
    for record in history.deployments if history else ():
        for manifest in record.settled_chunks:
            settled[manifest.original_path] = manifest
    return settled


__all__ = [
    "append_record",
    "load_history",
    "previous_publish_map",
    "save_history",
    "set_aside",
    "settled_chunk_map",
]
