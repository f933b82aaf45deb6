"""Substitute published access paths into text units."""

from __future__ import annotations

import re
from typing import Mapping

from ledger_deploy.analysis.extractors import ExtractorRegistry
from ledger_deploy.chunking.agent import agent_registration_snippet
from ledger_deploy.core.logging import get_logger
from ledger_deploy.utils.urls import strip_query

logger = get_logger(__name__)

_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_HTML_OPEN_RE = re.compile(r"<html[^>]*>", re.IGNORECASE)
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class ReferenceRewriter:
    """Rewrites each extracted reference whose target already has an access path."""

    def __init__(self, registry: ExtractorRegistry | None = None) -> None:
        self.registry = registry or ExtractorRegistry()

    def rewrite(
        self,
        path: str,
        data: bytes,
        access_map: Mapping[str, str],
        agent_access_path: str | None = None,
    ) -> bytes:
        references = [ref for ref in self.registry.extract(data, path) if ref.target in access_map]
        if not references and agent_access_path is None:
            return data

        text = data.decode(_ENCODING, errors=_ERRORS)
        parts: list[str] = []
        cursor = 0
        for ref in references:
            if ref.start < cursor:
                continue
            suffix = ref.raw[len(strip_query(ref.raw)):]
            parts.append(text[cursor : ref.start])
            parts.append(access_map[ref.target] + suffix)
            cursor = ref.end
        parts.append(text[cursor:])
        rewritten = "".join(parts)
        if references:
            logger.debug("Rewrote %s references in %s", len(references), path)

        if agent_access_path is not None:
            rewritten = inject_snippet(rewritten, agent_registration_snippet(agent_access_path))
        return rewritten.encode(_ENCODING, errors=_ERRORS)


def inject_snippet(html: str, snippet: str) -> str:
    """Insert ``snippet`` before ``</head>``, else after ``<html>``, else at the top."""
    match = _HEAD_CLOSE_RE.search(html)
    if match:
        return html[: match.start()] + snippet + html[match.start() :]
    match = _HTML_OPEN_RE.search(html)
    if match:
        return html[: match.end()] + snippet + html[match.end() :]
    return snippet + html


__all__ = ["ReferenceRewriter", "inject_snippet"]
