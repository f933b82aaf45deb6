"""Split oversized units into ledger-sized chunks."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterator, Sequence

from ledger_deploy.models.records import ChunkDescriptor, ChunkManifest
from ledger_deploy.utils.hashing import sha256_bytes
from ledger_deploy.utils.ids import access_path
from ledger_deploy.utils.urls import is_entry_document

MIB = 1024 * 1024
CHUNK_THRESHOLD = 5 * MIB
DEFAULT_CHUNK_SIZE = 10 * MIB
DEFAULT_BATCH_SIZE = 10
VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".avi", ".mkv", ".m4v")
# Fibonacci-like ramp (MiB) so playback can start after the first small chunk.
PROGRESSIVE_SCHEDULE = (1, 1, 2, 3, 5, 8, 10)


@dataclass(slots=True, frozen=True)
class FileChunk:
    index: int
    data: bytes
    size: int
    hash: str


def is_video(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in VIDEO_EXTENSIONS


def should_chunk(
    path: str,
    size: int,
    threshold: int = CHUNK_THRESHOLD,
    entry_point: str = "index.html",
) -> bool:
    """Files above ``threshold`` are split; the entry document never is."""
    return size > threshold and not is_entry_document(path, entry_point)


def chunk_sizes(total_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE, progressive: bool = False) -> list[int]:
    """Return the byte size of every chunk for a payload of ``total_size`` bytes."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    sizes: list[int] = []
    remaining = total_size
    for nominal in _nominal_sizes(chunk_size, progressive):
        if remaining <= 0:
            break
        take = min(nominal, remaining)
        sizes.append(take)
        remaining -= take
    return sizes


def _nominal_sizes(chunk_size: int, progressive: bool) -> Iterator[int]:
    if progressive:
        for units in PROGRESSIVE_SCHEDULE:
            yield min(units * MIB, chunk_size)
    while True:
        yield chunk_size


def split_into_chunks(
    data: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progressive: bool = False,
) -> list[FileChunk]:
    """Cut ``data`` into consecutive chunks whose concatenation is ``data``."""
    chunks: list[FileChunk] = []
    offset = 0
    for index, size in enumerate(chunk_sizes(len(data), chunk_size, progressive)):
        payload = data[offset : offset + size]
        chunks.append(FileChunk(index=index, data=payload, size=size, hash=sha256_bytes(payload)))
        offset += size
    return chunks


def create_chunk_manifest(
    original_path: str,
    mime_type: str,
    total_size: int,
    chunk_size: int,
    published: Sequence[tuple[FileChunk, str, int]],
) -> ChunkManifest:
    """Describe published chunks (chunk, txid, vout) in index order."""
    ordered = sorted(published, key=lambda item: item[0].index)
    return ChunkManifest(
        original_path=original_path,
        mime_type=mime_type,
        total_size=total_size,
        chunk_size=chunk_size,
        chunks=[
            ChunkDescriptor(
                index=chunk.index,
                txid=txid,
                vout=vout,
                url_path=access_path(txid, vout),
                size=chunk.size,
                hash=chunk.hash,
            )
            for chunk, txid, vout in ordered
        ],
    )


__all__ = [
    "CHUNK_THRESHOLD",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CHUNK_SIZE",
    "FileChunk",
    "MIB",
    "PROGRESSIVE_SCHEDULE",
    "VIDEO_EXTENSIONS",
    "chunk_sizes",
    "create_chunk_manifest",
    "is_video",
    "should_chunk",
    "split_into_chunks",
]
