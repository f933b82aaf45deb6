"""Client-side reassembly agent for chunked units."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import orjson

from ledger_deploy.models.records import ChunkManifest

AGENT_PATH = "chunk-reassembly-sw.js"
AGENT_MIME_TYPE = "application/javascript"
_TEMPLATE_PATH = Path(__file__).with_name("templates") / "reassembly_agent.js"


def _load_template() -> str:
    return _TEMPLATE_PATH.read_text(encoding="utf-8")


def generate_reassembly_agent(manifests: Iterable[ChunkManifest], content_url: str) -> str:
    """Render the service worker source; identical inputs give identical output."""
    ordered = sorted(manifests, key=lambda manifest: manifest.original_path)
    payload = [manifest.model_dump(mode="json", by_alias=True) for manifest in ordered]
    rendered = orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode("utf-8")
    return (
        _load_template()
        .replace("__CONTENT_URL__", content_url.rstrip("/"))
        .replace("__MANIFESTS__", rendered)
    )


def agent_registration_snippet(access_path: str) -> str:
    """``<script>`` registering the agent; placed in the entry document's ``<head>``."""
    return (
        "<script>"
        "if('serviceWorker' in navigator){"
        f"navigator.serviceWorker.register('{access_path}').catch(function(e){{"
        "console.warn('Chunk reassembly worker registration failed',e);});}"
        "</script>"
    )


__all__ = ["AGENT_MIME_TYPE", "AGENT_PATH", "agent_registration_snippet", "generate_reassembly_agent"]
