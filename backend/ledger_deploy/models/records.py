"""Pydantic models for the JSON artifacts a deployment writes."""

from __future__ import annotations

from typing import Any, Literal

import orjson
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CHUNK_MANIFEST_VERSION = "1.0"
HISTORY_MANIFEST_VERSION = "1.0.0"
CACHED_REF_SEPARATOR = "::*::"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> bytes:
        return dump_json(self.model_dump(mode="json", by_alias=True, exclude_none=True))


class ChunkReference(_Record):
    index: int
    txid: str
    vout: int
    size: int


class ChunkDescriptor(_Record):
    index: int
    txid: str
    vout: int
    url_path: str
    size: int
    hash: str


class ChunkManifest(_Record):
    version: str = CHUNK_MANIFEST_VERSION
    original_path: str
    mime_type: str
    total_size: int
    chunk_size: int
    chunks: list[ChunkDescriptor] = Field(default_factory=list)


class PublishedUnit(_Record):
    """A unit (or the head of a chunked unit) recorded on the ledger."""

    original_path: str
    txid: str
    vout: int
    url_path: str
    size: int
    content_hash: str | None = None
    dependency_hash: str | None = None
    cached: bool = False
    is_chunked: bool = False
    chunk_count: int | None = None
    chunks: list[ChunkReference] | None = None
    chunk_manifest: ChunkManifest | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}_{self.vout}"


class VersionEntry(_Record):
    version: str
    description: str = ""
    entry_point: str
    timestamp: str
    previous: str | None = None
    outpoint: str | None = None


class DeploymentRecord(_Record):
    timestamp: str
    entry_point: str
    files: list[PublishedUnit] = Field(default_factory=list)
    cached_files: list[str] = Field(default_factory=list)
    total_files: int = 0
    total_cost: int = 0
    total_size: int = 0
    transactions: list[str] = Field(default_factory=list)
    version: str | None = None
    version_description: str | None = None
    build_dir: str | None = None
    destination_address: str | None = None
    content_url: str | None = None
    new_files: int = 0
    cached_count: int = 0
    new_transactions: int = 0
    status: Literal["complete", "partial"] = "complete"
    latest_version_entry: VersionEntry | None = None
    chunk_manifests: list[ChunkManifest] = Field(default_factory=list)
    settled_chunks: list[ChunkManifest] = Field(default_factory=list)


class DeploymentHistory(_Record):
    manifest_version: str = HISTORY_MANIFEST_VERSION
    project_name: str | None = None
    origin_versioning_inscription: str | None = None
    total_deployments: int = 0
    deployments: list[DeploymentRecord] = Field(default_factory=list)

    @property
    def versions(self) -> list[str]:
        """Tags of completed deployments; a partial run may be resumed under its tag."""
        return [record.version for record in self.deployments if record.version and record.status == "complete"]


def dump_json(payload: Any) -> bytes:
    """Serialize a JSON-compatible payload the way every artifact is written to disk."""
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2)


def cached_ref(path: str, outpoint: str) -> str:
    """Encode a reused unit as ``path::*::txid_vout``."""
    return f"{path}{CACHED_REF_SEPARATOR}{outpoint}"


def parse_cached_ref(ref: str) -> tuple[str, str]:
    path, separator, outpoint = ref.rpartition(CACHED_REF_SEPARATOR)
    if not separator or not path or not outpoint:
        raise ValueError(f"Malformed cached file reference: {ref!r}")
    return path, outpoint


__all__ = [
    "CACHED_REF_SEPARATOR",
    "CHUNK_MANIFEST_VERSION",
    "ChunkDescriptor",
    "ChunkManifest",
    "ChunkReference",
    "DeploymentHistory",
    "DeploymentRecord",
    "HISTORY_MANIFEST_VERSION",
    "PublishedUnit",
    "VersionEntry",
    "cached_ref",
    "dump_json",
    "parse_cached_ref",
]
