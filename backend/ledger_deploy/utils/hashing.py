"""Hashing utilities."""

from __future__ import annotations

import hashlib
from typing import Iterable


def sha256_bytes(data: bytes) -> str:
    """Return hex digest for bytes input."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Return hex digest for UTF-8 encoded text."""
    return sha256_bytes(text.encode("utf-8"))


def sha256_joined(parts: Iterable[str], separator: str = "|") -> str:
    """Hash the separator-joined parts; used for dependency fingerprints."""
    return sha256_text(separator.join(parts))
