"""Reference classification and path normalization helpers."""

from __future__ import annotations

import posixpath
import re

_EXTERNAL_PREFIXES = ("http://", "https://", "//", "data:", "blob:", "mailto:", "tel:", "javascript:")
_PLACEHOLDER_MARKERS = ("__webpack_", "__NEXT_")
_QUERY_OR_FRAGMENT_RE = re.compile(r"[?#].*$")


def should_skip_url(url: str) -> bool:
    """True for references that never point into the build output."""
    if not url or not url.strip():
        return True
    lowered = url.strip().lower()
    if lowered.startswith(_EXTERNAL_PREFIXES):
        return True
    return any(marker in url for marker in _PLACEHOLDER_MARKERS)


def strip_query(ref: str) -> str:
    """Drop ``?query`` and ``#fragment`` suffixes."""
    return _QUERY_OR_FRAGMENT_RE.sub("", ref.strip())


def resolve_reference(ref: str, source_path: str, *, root_relative_bare: bool = False) -> str | None:
    """Resolve ``ref`` found in ``source_path`` to a build-root-relative POSIX path.

    Root-relative references (``/x``) resolve against the build root, everything else
    against the referencing file's directory. ``root_relative_bare`` treats bare
    ``dir/file.ext`` literals as root-relative, which is how bundlers emit asset paths.
    Returns ``None`` when the reference escapes the build root.
    """
    cleaned = strip_query(ref)
    if not cleaned:
        return None
    if cleaned.startswith("/"):
        joined = cleaned.lstrip("/")
    elif root_relative_bare and not cleaned.startswith(("./", "../")):
        joined = cleaned
    else:
        joined = posixpath.join(posixpath.dirname(source_path), cleaned)
    normalized = posixpath.normpath(joined)
    if normalized in (".", "") or normalized.startswith("../") or normalized == "..":
        return None
    return normalized


def is_entry_document(path: str, entry_point: str = "index.html") -> bool:
    """Entry documents are never chunked and are published last."""
    name = posixpath.basename(entry_point)
    return path == entry_point or path == name or path.endswith(f"/{name}")
