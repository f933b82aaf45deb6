"""Publish targets and the jobs built from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

from ledger_deploy.chunking.chunker import FileChunk, is_video, should_chunk, split_into_chunks
from ledger_deploy.utils.hashing import sha256_bytes

Render = Callable[[Mapping[str, str]], bytes]


@dataclass(slots=True)
class PublishTarget:
    """Something to publish: a build unit or a generated payload.

    ``render`` receives the current access map and returns the final bytes
    (references rewritten); ``content_hash`` fingerprints the bytes before
    rewriting and drives cache reuse.
    """

    path: str
    content_hash: str
    mime_type: str
    render: Render
    dependencies: tuple[str, ...] = ()
    chunkable: bool = True

    @classmethod
    def from_bytes(cls, path: str, data: bytes, mime_type: str, chunkable: bool = False) -> "PublishTarget":
        return cls(
            path=path,
            content_hash=sha256_bytes(data),
            mime_type=mime_type,
            render=lambda _access_map: data,
            chunkable=chunkable,
        )


@dataclass(slots=True, frozen=True)
class PublishJob:
    id: str
    path: str
    payload: bytes
    content_type: str
    chunk: FileChunk | None = None


@dataclass(slots=True)
class PreparedTarget:
    target: PublishTarget
    payload: bytes
    dependency_hash: str | None
    jobs: list[PublishJob] = field(default_factory=list)
    chunks: list[FileChunk] = field(default_factory=list)

    @property
    def is_chunked(self) -> bool:
        return bool(self.chunks)


def build_jobs(
    target: PublishTarget,
    payload: bytes,
    dependency_hash: str | None,
    *,
    chunking_enabled: bool = True,
    chunk_threshold: int,
    chunk_size: int,
    entry_point: str = "index.html",
) -> PreparedTarget:
    """One job per unit, or one job per chunk when the payload is oversized."""
    prepared = PreparedTarget(target=target, payload=payload, dependency_hash=dependency_hash)
    if (
        chunking_enabled
        and target.chunkable
        and should_chunk(target.path, len(payload), threshold=chunk_threshold, entry_point=entry_point)
    ):
        prepared.chunks = split_into_chunks(payload, chunk_size, progressive=is_video(target.path))
        prepared.jobs = [
            PublishJob(
                id=f"{target.path}#chunk-{chunk.index}",
                path=target.path,
                payload=chunk.data,
                content_type="application/octet-stream",
                chunk=chunk,
            )
            for chunk in prepared.chunks
        ]
    else:
        prepared.jobs = [PublishJob(id=target.path, path=target.path, payload=payload, content_type=target.mime_type)]
    return prepared


__all__ = ["PreparedTarget", "PublishJob", "PublishTarget", "build_jobs"]
